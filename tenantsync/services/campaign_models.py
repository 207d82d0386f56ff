"""Models for mirrored campaigns and their per-provider field schemas.

A campaign is kept as two snapshots: the state the tenant wants
(``desired_state``) and the state last seen on the platform
(``last_known_remote_state``). Both are plain dicts keyed by local field
names; the schema maps them to the platform's field names and says in which
lifecycle states each field may still change.

Lifecycle:
    DRAFT -> ACTIVE <-> PAUSED -> ARCHIVED / COMPLETED / CANCELED
    any non-draft -> PENDING_DELETION -> REMOVED
"""

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from tenantsync.integrations.domain import Provider, parse_datetime
from tenantsync.integrations.sync_domain import OutcomeStatus


class LifecycleState(str, Enum):
    """Lifecycle stage of a mirrored entity."""

    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    PENDING_DELETION = "PENDING_DELETION"
    REMOVED = "REMOVED"


INITIAL_STATE = LifecycleState.DRAFT

DRAFT_ONLY: frozenset[LifecycleState] = frozenset({LifecycleState.DRAFT})
EDITABLE: frozenset[LifecycleState] = frozenset(
    {LifecycleState.DRAFT, LifecycleState.ACTIVE, LifecycleState.PAUSED}
)
STATUS_EDITABLE: frozenset[LifecycleState] = EDITABLE | {LifecycleState.ARCHIVED}


@dataclass(frozen=True)
class FieldSpec:
    """One node of an entity schema.

    Attributes:
        name: Local field name.
        remote_name: Field name on the platform (defaults to ``name``).
        children: Nested fields compared and patched individually.
        mutable_in: Lifecycle states in which the field may be patched.
        unordered: Compare list values ignoring order.
    """

    name: str
    remote_name: str | None = None
    children: tuple["FieldSpec", ...] = ()
    mutable_in: frozenset[LifecycleState] = EDITABLE
    unordered: bool = False

    @property
    def remote(self) -> str:
        return self.remote_name or self.name

    def is_mutable(self, lifecycle: LifecycleState) -> bool:
        return lifecycle in self.mutable_in


@dataclass(frozen=True)
class EntitySchema:
    """Field schema plus status vocabulary for one provider's campaigns."""

    provider: Provider
    fields: tuple[FieldSpec, ...]
    lifecycle_by_status: dict[str, LifecycleState]
    pending_deletion_status: str
    status_field: str = "status"
    remote_id_field: str = "id"
    remote_updated_field: str | None = None

    def lifecycle_for(self, status: str | None) -> LifecycleState:
        """Map a platform status value to a lifecycle state.

        Unknown or missing statuses are treated as draft only for local-only
        entities; anything the platform reports that we do not recognise is
        treated as paused so no draft-only field is ever sent for it.
        """
        if status is None:
            return INITIAL_STATE
        return self.lifecycle_by_status.get(str(status).upper(), LifecycleState.PAUSED)

    def from_remote(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Project a platform payload onto local field names."""
        return _project(self.fields, raw, to_remote=False)

    def to_remote(self, state: dict[str, Any]) -> dict[str, Any]:
        """Project a local state onto platform field names."""
        return _project(self.fields, state, to_remote=True)


def _project(fields: tuple[FieldSpec, ...], source: dict[str, Any], to_remote: bool) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for spec in fields:
        src_key, dst_key = (spec.name, spec.remote) if to_remote else (spec.remote, spec.name)
        if src_key not in source:
            continue
        value = source[src_key]
        if spec.children and isinstance(value, dict):
            result[dst_key] = _project(spec.children, value, to_remote)
        else:
            result[dst_key] = copy.deepcopy(value)
    return result


@dataclass
class MirroredEntity:
    """A locally managed campaign mirrored against a platform."""

    tenant_id: str
    provider: Provider
    account_id: str
    id: str | None = None
    external_id: str | None = None
    entity_type: str = "campaign"
    desired_state: dict[str, Any] = field(default_factory=dict)
    last_known_remote_state: dict[str, Any] = field(default_factory=dict)
    lifecycle_state: LifecycleState = INITIAL_STATE
    remote_updated_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_pending_changes(self) -> bool:
        """Whether any desired field differs from the last remote snapshot."""
        if self.external_id is None:
            return True
        return any(
            self.last_known_remote_state.get(key) != value
            for key, value in self.desired_state.items()
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "tenant_id": self.tenant_id,
            "provider": self.provider.value,
            "account_id": self.account_id,
            "external_id": self.external_id,
            "entity_type": self.entity_type,
            "desired_state": self.desired_state,
            "last_known_remote_state": self.last_known_remote_state,
            "lifecycle_state": self.lifecycle_state.value,
            "remote_updated_at": (
                self.remote_updated_at.isoformat() if self.remote_updated_at else None
            ),
            "updated_at": datetime.now(UTC).isoformat(),
        }
        if self.id:
            data["id"] = self.id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MirroredEntity":
        return cls(
            tenant_id=data["tenant_id"],
            provider=Provider(data["provider"]),
            account_id=str(data["account_id"]),
            id=data.get("id"),
            external_id=data.get("external_id"),
            entity_type=data.get("entity_type") or "campaign",
            desired_state=dict(data.get("desired_state") or {}),
            last_known_remote_state=dict(data.get("last_known_remote_state") or {}),
            lifecycle_state=LifecycleState(data.get("lifecycle_state") or INITIAL_STATE.value),
            remote_updated_at=parse_datetime(data.get("remote_updated_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )


@dataclass
class ReconcileOutcome:
    """Result of one ``reconcile`` call."""

    local_id: str
    status: OutcomeStatus = OutcomeStatus.SUCCESS
    patched: bool = False
    created: bool = False
    changed_fields: list[str] = field(default_factory=list)
    skipped_immutable: list[str] = field(default_factory=list)
    payload: dict[str, Any] | None = None
    error: str | None = None
    error_fields: list[str] = field(default_factory=list)
    authorization_url: str | None = None
    retry_after: float | None = None

    @property
    def retryable(self) -> bool:
        return self.status == OutcomeStatus.RETRYABLE


# ---------------------------------------------------------------------------
# Provider schemas
# ---------------------------------------------------------------------------

LINKEDIN_CAMPAIGN_SCHEMA = EntitySchema(
    provider=Provider.LINKEDIN,
    fields=(
        FieldSpec("name"),
        FieldSpec("status", mutable_in=STATUS_EDITABLE),
        FieldSpec("type", mutable_in=DRAFT_ONLY),
        FieldSpec("objective_type", "objectiveType", mutable_in=DRAFT_ONLY),
        FieldSpec("format", mutable_in=DRAFT_ONLY),
        FieldSpec("locale", mutable_in=DRAFT_ONLY),
        FieldSpec("cost_type", "costType"),
        FieldSpec("daily_budget", "dailyBudget"),
        FieldSpec("total_budget", "totalBudget"),
        FieldSpec("unit_cost", "unitCost"),
        FieldSpec(
            "run_schedule",
            "runSchedule",
            children=(
                FieldSpec("start", mutable_in=DRAFT_ONLY),
                FieldSpec("end"),
            ),
        ),
        FieldSpec(
            "targeting",
            "targetingCriteria",
            children=(
                FieldSpec("include"),
                FieldSpec("exclude"),
            ),
        ),
        FieldSpec("offsite_delivery_enabled", "offsiteDeliveryEnabled"),
        FieldSpec("audience_expansion_enabled", "audienceExpansionEnabled"),
    ),
    lifecycle_by_status={
        "DRAFT": LifecycleState.DRAFT,
        "ACTIVE": LifecycleState.ACTIVE,
        "PAUSED": LifecycleState.PAUSED,
        "ARCHIVED": LifecycleState.ARCHIVED,
        "COMPLETED": LifecycleState.COMPLETED,
        "CANCELED": LifecycleState.CANCELED,
        "PENDING_DELETION": LifecycleState.PENDING_DELETION,
        "REMOVED": LifecycleState.REMOVED,
    },
    pending_deletion_status="PENDING_DELETION",
    remote_updated_field="changeAuditStamps.lastModified.time",
)

META_CAMPAIGN_SCHEMA = EntitySchema(
    provider=Provider.META,
    fields=(
        FieldSpec("name"),
        FieldSpec("status", mutable_in=STATUS_EDITABLE),
        FieldSpec("objective", mutable_in=DRAFT_ONLY),
        FieldSpec("buying_type", mutable_in=DRAFT_ONLY),
        FieldSpec("special_ad_categories", mutable_in=DRAFT_ONLY, unordered=True),
        FieldSpec("daily_budget"),
        FieldSpec("lifetime_budget"),
        FieldSpec("bid_strategy"),
        FieldSpec("spend_cap"),
        FieldSpec("start_time"),
        FieldSpec("stop_time"),
    ),
    lifecycle_by_status={
        "ACTIVE": LifecycleState.ACTIVE,
        "PAUSED": LifecycleState.PAUSED,
        "ARCHIVED": LifecycleState.ARCHIVED,
        "DELETED": LifecycleState.PENDING_DELETION,
    },
    pending_deletion_status="DELETED",
    remote_updated_field="updated_time",
)

GOOGLE_ADS_CAMPAIGN_SCHEMA = EntitySchema(
    provider=Provider.GOOGLE_ADS,
    fields=(
        FieldSpec("name"),
        FieldSpec("status", mutable_in=STATUS_EDITABLE),
        FieldSpec("advertising_channel_type", "advertisingChannelType", mutable_in=DRAFT_ONLY),
        FieldSpec("bidding_strategy_type", "biddingStrategyType", mutable_in=DRAFT_ONLY),
        FieldSpec("campaign_budget", "campaignBudget"),
        FieldSpec("start_date", "startDate", mutable_in=DRAFT_ONLY),
        FieldSpec("end_date", "endDate"),
        FieldSpec(
            "network_settings",
            "networkSettings",
            children=(
                FieldSpec("target_google_search", "targetGoogleSearch"),
                FieldSpec("target_search_network", "targetSearchNetwork"),
                FieldSpec("target_content_network", "targetContentNetwork"),
            ),
        ),
    ),
    lifecycle_by_status={
        "ENABLED": LifecycleState.ACTIVE,
        "PAUSED": LifecycleState.PAUSED,
        "REMOVED": LifecycleState.REMOVED,
    },
    # Google Ads has no pending-deletion status; active campaigns are paused
    # remotely and held as PENDING_DELETION locally.
    pending_deletion_status="PAUSED",
    remote_id_field="id",
)

CAMPAIGN_SCHEMAS: dict[Provider, EntitySchema] = {
    Provider.LINKEDIN: LINKEDIN_CAMPAIGN_SCHEMA,
    Provider.META: META_CAMPAIGN_SCHEMA,
    Provider.GOOGLE_ADS: GOOGLE_ADS_CAMPAIGN_SCHEMA,
}


def get_campaign_schema(provider: Provider) -> EntitySchema:
    """Return the campaign schema for an ad platform.

    Raises:
        KeyError: If the provider does not mirror campaigns.
    """
    return CAMPAIGN_SCHEMAS[provider]
