"""Funnel data model.

Funnel and step definitions (read-only input from the step definition store),
the server-side flow session record, and the client-side navigation state.

Step configuration is a discriminated union keyed by ``type``; every step type
has its own configuration model. The navigator only reads the universal
fields (``linked_downsell_step_id`` on upsells, ``skip_success_page`` on
success steps) and treats the rest of a configuration as opaque.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class StepType(str, Enum):
    """Closed set of funnel step types."""
    QUESTION = "question"
    SIGNUP = "signup"
    PAYMENT = "payment"
    GOAL_SETTING = "goal_setting"
    IDENTITY = "identity"
    ANALYZING = "analyzing"
    PLAN_REVEAL = "plan_reveal"
    EXPLAINER = "explainer"
    LANDING_PAGE = "landing_page"
    UPSELL = "upsell"
    DOWNSELL = "downsell"
    INFO = "info"
    SUCCESS = "success"


OFFER_STEP_TYPES = frozenset({StepType.UPSELL, StepType.DOWNSELL})


class FunnelAccessType(str, Enum):
    PUBLIC = "public"
    INVITE_ONLY = "invite_only"


class InvitePaymentStatus(str, Enum):
    """Payment status carried by an invite."""
    REQUIRED = "required"
    PRE_PAID = "pre_paid"
    FREE = "free"

    @property
    def skips_payment(self) -> bool:
        return self in (InvitePaymentStatus.PRE_PAID, InvitePaymentStatus.FREE)


class ShowIfOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    IN = "in"
    NIN = "nin"


class CamelModel(BaseModel):
    """Base model accepting both snake_case and camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# =============================================================================
# STEP CONFIGURATION (tagged union)
# =============================================================================

class _StepConfigBase(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )

    heading: Optional[str] = None


class QuestionStepConfig(_StepConfigBase):
    type: Literal["question"] = "question"
    question_type: str = "single_choice"
    question: Optional[str] = None
    field_name: str
    options: List[Dict[str, Any]] = Field(default_factory=list)
    required: bool = True


class SignupStepConfig(_StepConfigBase):
    type: Literal["signup"] = "signup"
    subheading: Optional[str] = None
    show_social_login: bool = True
    collect_phone: bool = False


class PaymentStepConfig(_StepConfigBase):
    type: Literal["payment"] = "payment"
    use_program_pricing: bool = True
    price_in_cents: Optional[int] = None
    stripe_price_id: Optional[str] = None
    features: List[str] = Field(default_factory=list)


class GoalSettingStepConfig(_StepConfigBase):
    type: Literal["goal_setting"] = "goal_setting"
    examples: List[str] = Field(default_factory=list)
    timeline_days: int = 90
    prompt_text: Optional[str] = None


class IdentityStepConfig(_StepConfigBase):
    type: Literal["identity"] = "identity"
    examples: List[str] = Field(default_factory=list)
    prompt_text: Optional[str] = None


class AnalyzingStepConfig(_StepConfigBase):
    type: Literal["analyzing"] = "analyzing"
    duration_ms: int = 3000
    messages: List[str] = Field(default_factory=list)


class PlanRevealStepConfig(_StepConfigBase):
    type: Literal["plan_reveal"] = "plan_reveal"
    body: Optional[str] = None
    cta_text: Optional[str] = None
    show_graph: bool = False


class ExplainerStepConfig(_StepConfigBase):
    type: Literal["explainer"] = "explainer"
    body: Optional[str] = None
    media_type: str = "image"
    media_url: Optional[str] = None
    layout: str = "media_top"
    cta_text: Optional[str] = None


class LandingPageStepConfig(_StepConfigBase):
    type: Literal["landing_page"] = "landing_page"
    sections: List[Dict[str, Any]] = Field(default_factory=list)
    cta_text: Optional[str] = None


class _OfferStepConfig(_StepConfigBase):
    product_id: str
    product_type: str = "program"
    price_in_cents: Optional[int] = None
    cohort_selection_mode: Literal["next_available", "specific"] = "next_available"
    cohort_id: Optional[str] = None


class UpsellStepConfig(_OfferStepConfig):
    type: Literal["upsell"] = "upsell"
    linked_downsell_step_id: Optional[str] = None


class DownsellStepConfig(_OfferStepConfig):
    type: Literal["downsell"] = "downsell"


class InfoStepConfig(_StepConfigBase):
    type: Literal["info"] = "info"
    body: Optional[str] = None
    image_url: Optional[str] = None
    cta_text: Optional[str] = None


class SuccessStepConfig(_StepConfigBase):
    type: Literal["success"] = "success"
    body: Optional[str] = None
    show_confetti: bool = True
    redirect_delay: Optional[int] = None
    skip_success_page: bool = False
    skip_success_redirect: Optional[str] = None


StepConfig = Annotated[
    Union[
        QuestionStepConfig,
        SignupStepConfig,
        PaymentStepConfig,
        GoalSettingStepConfig,
        IdentityStepConfig,
        AnalyzingStepConfig,
        PlanRevealStepConfig,
        ExplainerStepConfig,
        LandingPageStepConfig,
        UpsellStepConfig,
        DownsellStepConfig,
        InfoStepConfig,
        SuccessStepConfig,
    ],
    Field(discriminator="type"),
]


# =============================================================================
# STEPS AND FUNNELS
# =============================================================================

class ShowIfRule(CamelModel):
    """Conditional display rule evaluated against accumulated answer data."""
    model_config = ConfigDict(frozen=True)

    field: str
    operator: ShowIfOperator
    value: Any = None


class FunnelStep(CamelModel):
    """One step of a funnel."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    order: int
    name: Optional[str] = None
    config: StepConfig
    show_if: Optional[ShowIfRule] = None

    @model_validator(mode="before")
    @classmethod
    def _lift_type_into_config(cls, values: Any) -> Any:
        # Step documents carry the tag on the step ({"type": "upsell", "config": {...}});
        # the union discriminates on the config.
        if isinstance(values, dict) and "type" in values:
            values = dict(values)
            step_type = values.pop("type")
            config = values.get("config")
            if isinstance(config, dict):
                config = dict(config)
                config.setdefault("type", step_type.value if isinstance(step_type, StepType) else step_type)
                values["config"] = config
            elif config is None:
                values["config"] = {"type": step_type.value if isinstance(step_type, StepType) else step_type}
        return values

    @property
    def type(self) -> StepType:
        return StepType(self.config.type)


class Funnel(CamelModel):
    """A funnel definition. Immutable for the lifetime of a session."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    organization_id: str
    program_id: Optional[str] = None
    slug: Optional[str] = None
    name: Optional[str] = None
    is_active: bool = True
    access_type: FunnelAccessType = FunnelAccessType.PUBLIC
    default_payment_status: InvitePaymentStatus = InvitePaymentStatus.REQUIRED
    tracking: Dict[str, Any] = Field(default_factory=dict)
    steps: List[FunnelStep] = Field(default_factory=list)

    @field_validator("steps")
    @classmethod
    def _ordered_unique_steps(cls, steps: List[FunnelStep]) -> List[FunnelStep]:
        orders = [s.order for s in steps]
        if len(set(orders)) != len(orders):
            raise ValueError("step order values must be unique within a funnel")
        ids = [s.id for s in steps]
        if len(set(ids)) != len(ids):
            raise ValueError("step ids must be unique within a funnel")
        return sorted(steps, key=lambda s: s.order)

    def index_of(self, step_id: str) -> Optional[int]:
        """Index of a step by id, or None."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return None

    def first_success_config(self) -> Optional[SuccessStepConfig]:
        for step in self.steps:
            if isinstance(step.config, SuccessStepConfig):
                return step.config
        return None


# =============================================================================
# SESSION RECORD
# =============================================================================

class FunnelSession(CamelModel):
    """Authoritative server-side record of one traversal of one funnel."""

    id: str
    funnel_id: str
    organization_id: Optional[str] = None
    program_id: Optional[str] = None
    invite_code: Optional[str] = None
    referrer_id: Optional[str] = None
    step_count: int = 0
    current_step_index: int = 0
    completed_step_indexes: List[int] = Field(default_factory=list)
    highest_completed_step_index: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    linked_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None
    payment_status: InvitePaymentStatus = InvitePaymentStatus.REQUIRED

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    @property
    def skips_payment(self) -> bool:
        return self.payment_status.skips_payment

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if now is None:
            now = datetime.now(timezone.utc).replace(tzinfo=None)
        return now > self.expires_at


# =============================================================================
# CLIENT NAVIGATION STATE
# =============================================================================

@dataclass
class NavigationState:
    """
    Entire navigational state of one funnel traversal.

    ``current_index == len(steps)`` means the funnel is complete. ``history``
    is the stack of previously displayed indexes used for back navigation.
    """
    current_index: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
    declined_upsells: FrozenSet[str] = frozenset()
    skip_payment: bool = False
    unavailable_offer_step_ids: FrozenSet[str] = frozenset()
    history: List[int] = field(default_factory=list)

    def merge_data(self, step_data: Dict[str, Any]) -> Dict[str, Any]:
        """Overlay step data onto the accumulated answers (never deletes keys)."""
        self.data = {**self.data, **step_data}
        return self.data
