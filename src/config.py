"""Configuration for transcript-dispatch."""

import json

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./dispatch.db"
    api_prefix: str = "/api/v1"
    debug: bool = False

    # Webhook ingestion; shared secret set as clientState on the subscription
    webhook_client_state: str = ""
    webhook_resource_type: str = "callTranscript"

    # Durable queue
    queue_name: str = "transcript-notifications"
    queue_max_dequeue_count: int = 5
    queue_visibility_timeout_seconds: float = 300.0
    queue_retry_delay_seconds: float = 0.0
    queue_poll_interval_seconds: float = 2.0
    queue_batch_size: int = 16
    queue_worker_enabled: bool = True

    # In-process TTL caches
    dedup_ttl_seconds: float = 10 * 60
    execution_ttl_seconds: float = 2 * 60 * 60
    cancellation_mark_ttl_seconds: float = 30 * 60

    # Container Apps job platform
    job_subscription_id: str = ""
    job_resource_group: str = ""
    job_name: str = ""
    job_image: str = ""
    job_container_name: str = "transcript-processor"
    job_platform_base_url: str = "https://management.azure.com"
    job_platform_api_version: str = "2024-03-01"
    # env var name -> secret name on the job definition
    job_secret_refs: dict[str, str] = {
        "CLAUDE_CODE_OAUTH_TOKEN": "anthropic-oauth-token",
        "SURGE_EMAIL": "surge-email",
        "SURGE_TOKEN": "surge-token",
        "GRAPH_CLIENT_ID": "graph-client-id",
        "GRAPH_CLIENT_SECRET": "graph-client-secret",
        "GRAPH_TENANT_ID": "graph-tenant-id",
        "NOTIFY_WEBHOOK_URL": "notify-webhook-url",
    }
    job_static_env: dict[str, str] = {"APP_ENV": "production"}

    # Cancellation links handed to the job; cancel_url wins over public_hostname
    cancel_url: str = ""
    public_hostname: str = ""

    # Entra ID app registration shared by Graph and the management API
    azure_tenant_id: str = ""
    azure_client_id: str = ""
    azure_client_secret: str = ""
    login_base_url: str = "https://login.microsoftonline.com"

    # Graph change-notification subscription renewal
    graph_subscription_id: str = ""
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    renewal_enabled: bool = True
    renewal_interval_seconds: float = 24 * 60 * 60
    # Transcript subscriptions live at most 72h; renew for less to absorb drift
    renewal_window_hours: float = 60.0
    renewal_max_attempts: int = 3
    renewal_timeout_seconds: float = 30.0
    renewal_backoff_base_seconds: float = 1.0
    renewal_backoff_max_seconds: float = 30.0

    # Outbound chat notifications (workflow webhook)
    notify_webhook_url: str = ""

    # Subprocess supervisor, used inside the job
    supervisor_command: str = (
        "claude --print --verbose --output-format stream-json "
        "--permission-mode bypassPermissions"
    )
    supervisor_inactivity_timeout_seconds: float = 15 * 60
    supervisor_check_interval_seconds: float = 30.0
    supervisor_progress_interval_seconds: float = 60.0
    supervisor_result_marker: str = "DEPLOYED_URL"
    supervisor_cancel_poll_seconds: float = 30.0

    model_config = {"env_prefix": "DISPATCH_"}

    @field_validator("job_secret_refs", "job_static_env", mode="before")
    @classmethod
    def _parse_json_mapping(cls, value: object) -> object:
        if value in (None, ""):
            return {}
        if isinstance(value, dict):
            return value
        if isinstance(value, str):
            return json.loads(value)
        raise TypeError("value must be a dict or JSON object string")


settings = Settings()
