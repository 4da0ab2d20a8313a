"""Component configuration."""

from typing import List, Optional, Set

from pydantic import BaseModel, Field

from audit_kernel.models.validation import RuleId


class NormalizerConfig(BaseModel):
    """Maps upstream field names onto canonical record fields. The first
    candidate present in a raw record wins."""

    identity_fields: List[str] = ["identity", "Name", "name"]
    source_id_fields: List[str] = ["source_id", "Id", "id"]
    account_fields: List[str] = ["account", "Account__c", "account_name"]
    status_fields: List[str] = ["status", "Status__c"]
    request_action_fields: List[str] = ["request_action", "TenantRequestAction__c", "request_type"]
    payload_fields: List[str] = ["payload", "Payload_Data__c", "payload_data"]
    created_at_fields: List[str] = ["created_at", "CreatedDate", "created_date"]
    last_modified_fields: List[str] = ["last_modified", "LastModifiedDate", "last_modified_date"]


class ValidationConfig(BaseModel):
    """Rule parameters for the validation engine."""

    quantity_min: int = 1
    quantity_max: Optional[int] = None
    quantity_exempt_products: Set[str] = set()
    gap_tolerance_days: int = Field(default=0, ge=0)
    package_name_pattern: str = r"^[A-Za-z0-9][A-Za-z0-9 _.\-]*$"
    package_name_exempt_products: Set[str] = {"IC-DATABRIDGE", "IC-RISKDATALAKE"}
    max_models: int = 100
    enabled_rules: Set[str] = {r.value for r in RuleId}


class OrchestratorConfig(BaseModel):
    """Configuration for the batch orchestrator."""

    max_page_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_exponential_base: float = 2.0
    retry_jitter: bool = True
    worker_count: int = Field(default=4, ge=1)
    schedule: str = "*/15 * * * *"          # Cron expression for scheduled incremental runs


class ExpirationConfig(BaseModel):
    window_days: int = 30
    at_risk_days: int = 7
    upcoming_days: int = 30
