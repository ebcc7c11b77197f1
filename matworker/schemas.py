from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, TypedDict, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, HttpUrl, field_validator

Position = Literal["standing", "top", "bottom", "transition", "not_visible"]
Significance = Literal["CRITICAL", "IMPORTANT", "CONTEXT", "SKIP"]
Severity = Literal["info", "warning", "error"]
MatchStyle = Literal["folkstyle", "hs_folkstyle", "college_folkstyle", "freestyle", "greco_roman"]
AnalysisMode = Literal["athlete", "opponent"]
ActionType = Literal[
    "takedown_attempt",
    "takedown_defense",
    "riding_sequence",
    "escape_attempt",
    "reversal_attempt",
    "scramble",
    "neutral_exchange",
    "near_fall",
    "transition",
    "reset",
    "unknown",
]
WindowSignificance = Literal["critical", "important", "context"]

POSITIONS: Tuple[str, ...] = ("standing", "top", "bottom", "transition", "not_visible")
SCORED_POSITIONS: Tuple[str, ...] = ("standing", "top", "bottom")
SIGNIFICANCE_LEVELS: Tuple[str, ...] = ("CRITICAL", "IMPORTANT", "CONTEXT", "SKIP")

_POSITION_ALIASES = {
    "neutral": "standing",
    "other": "not_visible",
    "not visible": "not_visible",
    "not-visible": "not_visible",
    "unknown": "not_visible",
    "scramble": "transition",
}


def split_data_url(data: str) -> Tuple[str, str]:
    """Return ``(media_type, base64_payload)`` for a raw or ``data:`` URL encoded image."""

    if data.startswith("data:"):
        comma = data.find(",")
        if 0 <= comma < 50:
            header = data[5:comma]
            media_type = header.split(";")[0] or "image/jpeg"
            return media_type, data[comma + 1 :]
    return "image/jpeg", data


class Frame(BaseModel):
    """One encoded video frame and its 0-based position in the submitted sequence."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    data: str

    @property
    def payload(self) -> str:
        return split_data_url(self.data)[1]

    @property
    def media_type(self) -> str:
        return split_data_url(self.data)[0]


def _choice(value: Any, allowed: Tuple[str, ...], aliases: Optional[Dict[str, str]] = None) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    if aliases and text in aliases:
        return aliases[text]
    text = text.replace(" ", "_").replace("-", "_")
    return text if text in allowed else None


class Observation(BaseModel):
    """Pass 1 output for a single frame. Never mutated once created."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    frame_index: int
    athlete_position: Position = "not_visible"
    athlete_body: str = ""
    opponent_body: str = ""
    contact_points: str = ""
    action: str = ""
    wrestler_visible: bool = True
    athlete_identity_consistent: Optional[bool] = None
    identity_notes: str = ""
    estimated_stance_height: Optional[Literal["low", "medium", "high"]] = None
    estimated_knee_angle: Optional[Literal["deep_bend", "moderate", "straight"]] = None
    relative_position: Optional[Literal["tied_up", "on_mat", "scramble", "separated"]] = None
    weight_distribution: Optional[Literal["forward", "balanced", "backward"]] = None
    significance: Significance = "CONTEXT"

    @field_validator("athlete_position", mode="before")
    @classmethod
    def _coerce_position(cls, value: Any) -> str:
        return _choice(value, POSITIONS, _POSITION_ALIASES) or "not_visible"

    @field_validator("significance", mode="before")
    @classmethod
    def _coerce_significance(cls, value: Any) -> str:
        text = str(value or "").strip().upper()
        return text if text in SIGNIFICANCE_LEVELS else "CONTEXT"

    @field_validator("estimated_stance_height", mode="before")
    @classmethod
    def _coerce_stance(cls, value: Any) -> Optional[str]:
        return _choice(value, ("low", "medium", "high"))

    @field_validator("estimated_knee_angle", mode="before")
    @classmethod
    def _coerce_knee(cls, value: Any) -> Optional[str]:
        return _choice(value, ("deep_bend", "moderate", "straight"))

    @field_validator("relative_position", mode="before")
    @classmethod
    def _coerce_relative(cls, value: Any) -> Optional[str]:
        return _choice(value, ("tied_up", "on_mat", "scramble", "separated"))

    @field_validator("weight_distribution", mode="before")
    @classmethod
    def _coerce_weight(cls, value: Any) -> Optional[str]:
        return _choice(value, ("forward", "balanced", "backward"))

    @field_validator(
        "athlete_body",
        "opponent_body",
        "contact_points",
        "action",
        "identity_notes",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)

    @field_validator("wrestler_visible", mode="before")
    @classmethod
    def _coerce_visible(cls, value: Any) -> Any:
        return True if value is None else value


class ActionWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_frame: int
    end_frame: int
    peak_frame: int
    frame_indices: List[int]
    position: str
    action_type: ActionType
    significance: WindowSignificance
    techniques: List[str] = Field(default_factory=list)
    is_scoring_event: bool = False
    description: str = ""

    @property
    def frame_count(self) -> int:
        return len(self.frame_indices)


class MatchPhase(BaseModel):
    phase: int
    start_frame: int
    end_frame: int
    window_count: int
    dominant_position: str
    intensity: Literal["high", "medium", "low"]
    scoring_events: int

    @property
    def description(self) -> str:
        return (
            f"Phase {self.phase}: {self.intensity} intensity, primarily {self.dominant_position}, "
            f"{self.scoring_events} scoring events"
        )


class TempoChange(BaseModel):
    frame: int
    from_level: WindowSignificance
    to_level: WindowSignificance


class TemporalSummary(BaseModel):
    windows: List[ActionWindow] = Field(default_factory=list)
    position_distribution: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    action_type_counts: Dict[str, int] = Field(default_factory=dict)
    phases: List[MatchPhase] = Field(default_factory=list)
    tempo: Literal["high", "medium", "low"] = "low"
    tempo_changes: List[TempoChange] = Field(default_factory=list)
    scoring_event_count: int = 0

    @property
    def total_windows(self) -> int:
        return len(self.windows)


class PoseMetrics(BaseModel):
    frame_index: int
    athlete_stance_width: Optional[float] = None
    knee_angle: Optional[float] = None
    hip_height: Optional[float] = None
    shoulder_angle: Optional[float] = None
    center_of_mass_y: Optional[float] = None
    opponent_proximity: Optional[float] = None
    entanglement_score: Optional[float] = None


TrendLabel = Literal["rising", "falling", "narrowing", "widening", "straightening", "deepening", "stable", "insufficient_data"]


class PoseTrends(BaseModel):
    sample_count: int = 0
    hip_height_trend: TrendLabel = "insufficient_data"
    stance_width_trend: TrendLabel = "insufficient_data"
    knee_angle_trend: TrendLabel = "insufficient_data"
    fatigue_indicators: List[str] = Field(default_factory=list)


class QualityFlag(BaseModel):
    check: str
    severity: Severity
    detail: str


# --- Pass 2 (athlete) -------------------------------------------------------


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PositionScores(_StrictModel):
    standing: float
    top: float
    bottom: float


class StandingSubScores(_StrictModel):
    stance_motion: float
    shot_selection: float
    shot_finishing: float
    sprawl_defense: float
    reattacks_chains: float


class TopSubScores(_StrictModel):
    ride_tightness: float
    breakdowns: float
    turns_nearfalls: float
    mat_returns: float


class BottomSubScores(_StrictModel):
    base_posture: float
    standups: float
    sitouts_switches: float
    reversals: float


class SubScores(_StrictModel):
    standing: StandingSubScores
    top: TopSubScores
    bottom: BottomSubScores


class PositionReasoning(_StrictModel):
    standing: str = Field(description="2-3 sentences: techniques observed, what earned points, what lost points")
    top: str = Field(description="2-3 sentences: techniques observed, what earned points, what lost points")
    bottom: str = Field(description="2-3 sentences: techniques observed, what earned points, what lost points")


class FrameEvidence(_StrictModel):
    frame_index: int = Field(description="0-based index into the analyzed frame list")
    position: str = Field(description="standing, top, bottom, transition, or other")
    action: str = Field(description="3-6 word technique description; prefix scoring actions with ATHLETE: or OPPONENT:")
    is_key_moment: bool
    key_moment_type: str = Field(
        default="",
        description="takedown, escape, near_fall, reversal, pin_attempt, or empty string",
    )
    detail: str = Field(description="One sentence, max 30 words")
    wrestler_visible: bool
    rubric_impact: str = Field(
        description='Which sub-criteria this evidence impacts and how, e.g. "+3 Shot Finishing for clean high crotch drive-through"'
    )


class DrillRecommendation(_StrictModel):
    name: str
    description: str
    reps: str
    priority: str = Field(description="critical, high, medium, or maintenance")
    addresses: str = Field(description="Which weakness this drill addresses")


class MatchResult(_StrictModel):
    result: str = Field(default="unknown", description="win, loss, draw, or unknown")
    result_type: str = Field(
        default="unknown",
        description="pin, tech_fall, major_decision, decision, or unknown",
    )
    match_duration_seconds: float = Field(default=0.0, description="Estimated duration, 0 if unknown")


class MatchStats(_StrictModel):
    takedowns_scored: int = 0
    takedowns_allowed: int = 0
    reversals_scored: int = 0
    escapes_scored: int = 0
    near_falls_scored: int = 0
    pins_scored: int = 0

    def total(self) -> int:
        return (
            self.takedowns_scored
            + self.takedowns_allowed
            + self.reversals_scored
            + self.escapes_scored
            + self.near_falls_scored
            + self.pins_scored
        )


class FatigueAnalysis(_StrictModel):
    first_half_score: float = Field(default=0.0, description="Estimated technique score for the first half (0-100)")
    second_half_score: float = Field(default=0.0, description="Estimated technique score for the second half (0-100)")
    score_delta: float = Field(default=0.0, description="second_half - first_half (negative means deterioration)")
    stance_height_change: str = ""
    reaction_time_change: str = ""
    shot_quality_change: str = ""
    scoring_rate_change: str = ""
    conditioning_flag: bool = Field(default=False, description="True when the second half is more than 10 points lower")
    conditioning_notes: str = ""


class ScoredAssessment(_StrictModel):
    """Athlete-mode Pass 2 output. Corrected exactly once by the validation stage."""

    overall_score: float = Field(description="standing*0.4 + top*0.3 + bottom*0.3, rounded")
    confidence: float = Field(description="0.0-1.0 based on visibility, position variety and coverage")
    position_scores: PositionScores
    sub_scores: SubScores
    position_reasoning: PositionReasoning
    frame_evidence: List[FrameEvidence] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    drills: List[DrillRecommendation] = Field(default_factory=list)
    summary: str = ""
    match_result: MatchResult = Field(default_factory=MatchResult)
    match_stats: MatchStats = Field(default_factory=MatchStats)
    fatigue_analysis: FatigueAnalysis = Field(default_factory=FatigueAnalysis)


# --- Pass 2 (opponent scouting) ---------------------------------------------


class OpponentProfile(_StrictModel):
    estimated_skill_level: str = Field(description="Elite, Advanced, Solid, Developing, or Beginner")
    primary_style: str
    stance: str = Field(description="Orthodox, Southpaw, or Switches")


class AttackPattern(_StrictModel):
    technique: str
    frequency: str = Field(description="primary, secondary, or occasional")
    setup: str
    effectiveness: str = Field(description="high, medium, or low")
    counter_recommendation: str


class DefensePattern(_StrictModel):
    situation: str
    typical_response: str
    vulnerability: str


class PositionTendencies(_StrictModel):
    standing: str
    top: str
    bottom: str


class Gameplan(_StrictModel):
    period1: str
    period2: str
    if_ahead: str
    if_behind: str
    key_techniques: List[str] = Field(default_factory=list)


class ScoutingResult(_StrictModel):
    opponent_profile: OpponentProfile
    attack_patterns: List[AttackPattern] = Field(default_factory=list)
    defense_patterns: List[DefensePattern] = Field(default_factory=list)
    position_tendencies: PositionTendencies
    conditioning_indicators: str = ""
    gameplan: Gameplan
    summary: str = ""


# --- Inbound request --------------------------------------------------------


class ParticipantIdentification(BaseModel):
    uniform_description: str = Field(
        validation_alias=AliasChoices("uniform_description", "uniformDescription", "singlet_color", "singletColor")
    )
    initial_side: Optional[Literal["left", "right"]] = Field(
        default=None,
        validation_alias=AliasChoices("initial_side", "initialSide", "position"),
    )


class MatchContext(BaseModel):
    weight_class: Optional[str] = Field(default=None, validation_alias=AliasChoices("weight_class", "weightClass"))
    competition_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("competition_name", "competitionName")
    )
    round_number: Optional[int] = Field(
        default=None, ge=1, validation_alias=AliasChoices("round_number", "roundNumber")
    )
    days_from_weigh_in: Optional[int] = Field(
        default=None, ge=0, validation_alias=AliasChoices("days_from_weigh_in", "daysFromWeighIn")
    )

    def is_empty(self) -> bool:
        return not any(
            value is not None
            for value in (self.weight_class, self.competition_name, self.round_number, self.days_from_weigh_in)
        )


class AnalysisRequest(BaseModel):
    frames: List[str] = Field(default_factory=list)
    match_style: MatchStyle = Field(
        default="folkstyle", validation_alias=AliasChoices("match_style", "matchStyle")
    )
    mode: AnalysisMode = "athlete"
    athlete_identification: Optional[ParticipantIdentification] = Field(
        default=None, validation_alias=AliasChoices("athlete_identification", "athleteIdentification")
    )
    opponent_identification: Optional[ParticipantIdentification] = Field(
        default=None, validation_alias=AliasChoices("opponent_identification", "opponentIdentification")
    )
    id_frame: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("id_frame", "idFrameBase64", "referencePhoto", "reference_photo"),
    )
    match_context: Optional[MatchContext] = Field(
        default=None, validation_alias=AliasChoices("match_context", "matchContext")
    )
    async_mode: bool = Field(default=False, validation_alias=AliasChoices("async_mode", "async", "asyncMode"))
    quick: bool = Field(default=False, validation_alias=AliasChoices("quick", "quickMode", "quick_mode"))
    athlete_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("athlete_id", "athleteId"))
    webhook_url: Optional[HttpUrl] = Field(
        default=None, validation_alias=AliasChoices("webhook_url", "webhookUrl")
    )

    @field_validator("match_style", mode="before")
    @classmethod
    def _legacy_style(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip() in {"grecoRoman", "greco-roman", "greco"}:
            return "greco_roman"
        return value

    @field_validator("frames")
    @classmethod
    def _strip_blank_frames(cls, value: List[str]) -> List[str]:
        return [frame for frame in value if frame and frame.strip()]

    def build_frames(self) -> List[Frame]:
        return [Frame(index=i, data=data) for i, data in enumerate(self.frames)]


# --- Outcomes ---------------------------------------------------------------


class AthleteOutcome(BaseModel):
    mode: Literal["athlete"] = "athlete"
    assessment: ScoredAssessment
    quality_flags: List[QualityFlag] = Field(default_factory=list)
    identity_confidence: Optional[float] = None
    position_confidence: Dict[str, float] = Field(default_factory=dict)
    display_frames: List[int] = Field(default_factory=list)
    frames_submitted: int = 0
    frames_analyzed: int = 0
    observation_count: int = 0
    pose_trends: Optional[PoseTrends] = None
    telemetry: Dict[str, Any] = Field(default_factory=dict)
    document: Dict[str, Any] = Field(default_factory=dict)


class OpponentOutcome(BaseModel):
    mode: Literal["opponent"] = "opponent"
    scouting: ScoutingResult
    quality_flags: List[QualityFlag] = Field(default_factory=list)
    frames_submitted: int = 0
    frames_analyzed: int = 0
    observation_count: int = 0
    telemetry: Dict[str, Any] = Field(default_factory=dict)
    document: Dict[str, Any] = Field(default_factory=dict)


AnalysisOutcome = Annotated[Union[AthleteOutcome, OpponentOutcome], Field(discriminator="mode")]


JobStatus = Literal["processing", "complete", "failed"]


class PipelineJob(TypedDict, total=False):
    job_id: str
    status: JobStatus
    stage: str
    pct: float
    detail: str
    stages: List[Dict[str, Any]]
    result: Optional[Dict[str, Any]]
    error: Optional[str]
    error_code: Optional[str]
    user_message: Optional[str]
    can_retry: Optional[bool]
    created_at: float
    updated_at: float
    last_heartbeat_at: float
    progress: Dict[str, Any]
