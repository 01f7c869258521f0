"""Local cache of support tickets, CRM ownership and issue tracker links"""
