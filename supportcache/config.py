"""Application configuration"""

from pydantic_settings import BaseSettings


def split_csv(value: str | None) -> list[str]:
    """Split a comma-separated setting into trimmed, non-empty items."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite:///./supportcache.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging
    log_level: str = "INFO"

    # Sync scheduling
    # Crontab expression (minute hour day month weekday). Empty disables the schedule.
    sync_schedule: str = "0 2 * * *"
    sync_on_startup_if_empty: bool = True

    # Fetching
    # Upper bound on concurrent requests against a single source within a phase.
    fetch_concurrency: int = 4
    open_ticket_max_pages: int = 50
    closed_ticket_max_pages: int = 30
    source_max_attempts: int = 3

    # Zendesk (ticketing)
    zendesk_subdomain: str | None = None
    zendesk_email: str | None = None
    zendesk_api_token: str | None = None
    # Optional explicit custom field ids. When unset, fields are detected by title.
    zendesk_product_field_id: int | None = None
    zendesk_module_field_id: int | None = None
    zendesk_ticket_type_field_id: int | None = None
    zendesk_workflow_status_field_id: int | None = None
    zendesk_issue_subtype_field_id: int | None = None

    # Salesforce (CRM)
    salesforce_login_url: str = "https://login.salesforce.com"
    # "client_credentials" or "jwt"
    salesforce_auth_type: str = "client_credentials"
    salesforce_client_id: str | None = None
    salesforce_client_secret: str | None = None
    salesforce_username: str | None = None
    salesforce_private_key: str | None = None
    salesforce_private_key_path: str | None = None
    salesforce_api_version: str = "v59.0"

    # GitLab (issue tracker)
    gitlab_url: str = "https://gitlab.com"
    gitlab_token: str | None = None
    # Comma-separated board specs, each "project_path#board_id".
    #
    # Example: "support/backlog#12,platform/core#3"
    gitlab_boards: str | None = None
    gitlab_search_group: str | None = None
    gitlab_search_projects: str | None = None

    # Ticket reference extraction
    ticket_url_host: str | None = None
    max_ticket_id: int = 10_000_000

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def zendesk_configured(self) -> bool:
        return bool(self.zendesk_subdomain and self.zendesk_email and self.zendesk_api_token)

    @property
    def salesforce_configured(self) -> bool:
        if not self.salesforce_client_id:
            return False
        if self.salesforce_auth_type == "jwt":
            return bool(
                self.salesforce_username
                and (self.salesforce_private_key or self.salesforce_private_key_path)
            )
        return bool(self.salesforce_client_secret)

    @property
    def gitlab_configured(self) -> bool:
        return bool(self.gitlab_token)

    @property
    def zendesk_field_overrides(self) -> dict[str, int]:
        overrides = {
            "product": self.zendesk_product_field_id,
            "module": self.zendesk_module_field_id,
            "ticket_type": self.zendesk_ticket_type_field_id,
            "workflow_status": self.zendesk_workflow_status_field_id,
            "issue_subtype": self.zendesk_issue_subtype_field_id,
        }
        return {key: value for key, value in overrides.items() if value}


settings = Settings()
