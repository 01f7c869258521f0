import unittest
from datetime import date
from types import SimpleNamespace

from supportcache.services.reconciliation import (
    OrganizationRef,
    match_assignments,
    names_match,
    normalize_account_name,
    normalize_organization_name,
    qbr_cutoff_date,
)


def _assignment(account_id, account_name, owner="ann"):
    return SimpleNamespace(
        account_id=account_id,
        account_name=account_name,
        owner_id=f"005{owner}",
        owner_name=owner.title(),
        owner_email=f"{owner}@example.com",
    )


class NameNormalizationTests(unittest.TestCase):
    def test_accents_and_legal_suffix_are_ignored(self):
        self.assertEqual(normalize_account_name("Nestlé, Inc."), "nestle")
        self.assertTrue(names_match("Nestlé, Inc.", "Nestle"))

    def test_dash_suffix_only_stripped_from_organization_names(self):
        self.assertEqual(normalize_organization_name("ADP -Corp"), "adp")
        self.assertEqual(normalize_organization_name("ADP Enterprise"), "adp enterprise")
        self.assertTrue(names_match("ADP, Inc.", "ADP -Corp"))
        self.assertTrue(names_match("ADP, Inc.", "ADP Enterprise"))

    def test_prefix_requires_three_characters(self):
        self.assertTrue(names_match("Ace", "Acely Systems"))
        self.assertFalse(names_match("Ac", "Acme"))

    def test_word_boundary_match_requires_four_characters(self):
        self.assertTrue(names_match("Acme", "The Acme Group"))
        self.assertFalse(names_match("Acme", "Bigacme Group Holdings"))
        self.assertFalse(names_match("Ibm", "Big Ibm Shop"))

    def test_empty_account_name_never_matches(self):
        self.assertFalse(names_match("", "Acme"))
        self.assertFalse(names_match("Inc.", "Acme"))


class MatchAssignmentsTests(unittest.TestCase):
    def test_identifier_match_wins_over_name_match(self):
        orgs = [
            OrganizationRef(1, "Nestle", crm_account_id=None),
            OrganizationRef(2, "Food Holdings", crm_account_id="001N"),
        ]
        result = match_assignments([_assignment("001N", "Nestlé, Inc.")], orgs)

        [row] = result.rows
        self.assertEqual(row["organization_id"], 2)
        self.assertEqual(result.matched_by_id, 1)
        self.assertEqual(result.matched_by_name, 0)
        # Name matches still receive the account display name.
        self.assertEqual(result.crm_names, {2: "Nestlé, Inc.", 1: "Nestlé, Inc."})
        self.assertEqual(result.additional_orgs_mapped, 1)

    def test_first_name_match_becomes_primary_without_identifier(self):
        orgs = [
            OrganizationRef(5, "ADP -Corp"),
            OrganizationRef(6, "ADP Enterprise"),
            OrganizationRef(7, "Globex"),
        ]
        result = match_assignments([_assignment("001A", "ADP, Inc.")], orgs)

        self.assertEqual(result.rows[0]["organization_id"], 5)
        self.assertEqual(result.matched_by_name, 1)
        self.assertEqual(result.crm_names, {5: "ADP, Inc.", 6: "ADP, Inc."})

    def test_unmatched_assignment_keeps_row_without_organization(self):
        result = match_assignments([_assignment("001Z", "Zyxwv Holdings")], [OrganizationRef(1, "Acme")])

        self.assertEqual(result.unmatched, 1)
        self.assertIsNone(result.rows[0]["organization_id"])
        self.assertEqual(result.rows[0]["owner_email"], "ann@example.com")
        self.assertEqual(result.crm_names, {})

    def test_later_assignment_overwrites_display_name(self):
        orgs = [OrganizationRef(1, "Acme Europe")]
        result = match_assignments(
            [_assignment("001A", "Acme"), _assignment("001B", "Acme Europe Ltd")],
            orgs,
        )
        self.assertEqual(result.crm_names, {1: "Acme Europe Ltd"})
        self.assertEqual([r["organization_id"] for r in result.rows], [1, 1])


class QbrCutoffTests(unittest.TestCase):
    def test_cutoff_for_every_month(self):
        expected = {
            1: date(2025, 7, 1),
            2: date(2025, 7, 1),
            3: date(2025, 7, 1),
            4: date(2025, 10, 1),
            5: date(2025, 10, 1),
            6: date(2025, 10, 1),
            7: date(2026, 1, 1),
            8: date(2026, 1, 1),
            9: date(2026, 1, 1),
            10: date(2026, 4, 1),
            11: date(2026, 4, 1),
            12: date(2026, 4, 1),
        }
        for month, cutoff in expected.items():
            with self.subTest(month=month):
                self.assertEqual(qbr_cutoff_date(date(2026, month, 15)), cutoff)

    def test_window_spans_three_quarters(self):
        today = date(2026, 2, 10)
        cutoff = qbr_cutoff_date(today)
        self.assertEqual(cutoff, date(2025, 7, 1))
        self.assertLessEqual(cutoff, today)


if __name__ == "__main__":
    unittest.main()
