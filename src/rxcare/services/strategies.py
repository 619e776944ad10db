"""
Strategy Recommendation Engine

Static knowledge base mapping problem category to remediation strategy
templates, plus pure functions to look up, validate and rank them.

Nothing here touches storage. Callers get copies; the table itself is
never mutated.
"""

from dataclasses import dataclass, field, replace
from typing import Any

from rxcare.models.intervention import (
    InterventionCategory,
    InterventionPriority,
    InterventionStrategy,
    StrategyPriority,
    StrategyType,
)

PRIMARY = StrategyPriority.PRIMARY
SECONDARY = StrategyPriority.SECONDARY
C = InterventionCategory

MAX_RECOMMENDATIONS = 4
AGE_PK_NOTE = " (Consider age-related pharmacokinetic changes)"


@dataclass(frozen=True)
class StrategyTemplate:
    """A reusable strategy suggestion."""
    type: StrategyType
    label: str
    description: str
    rationale: str
    expected_outcome: str
    priority: StrategyPriority
    applicable_categories: tuple[InterventionCategory, ...] = field(default_factory=tuple)

    def to_strategy(self) -> InterventionStrategy:
        return InterventionStrategy(
            type=self.type,
            description=self.description,
            rationale=self.rationale,
            expected_outcome=self.expected_outcome,
            priority=self.priority,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "label": self.label,
            "description": self.description,
            "rationale": self.rationale,
            "expected_outcome": self.expected_outcome,
            "priority": self.priority.value,
            "applicable_categories": [c.value for c in self.applicable_categories],
        }


def _t(type_, label, description, rationale, outcome, priority, *categories) -> StrategyTemplate:
    return StrategyTemplate(
        StrategyType(type_), label, description, rationale, outcome, priority, tuple(categories)
    )


# =============================================================================
# Knowledge Base
# =============================================================================

STRATEGY_MAPPINGS: dict[InterventionCategory, tuple[StrategyTemplate, ...]] = {
    C.DRUG_THERAPY_PROBLEM: (
        _t("medication_review", "Comprehensive Medication Review",
           "Conduct thorough review of all medications",
           "Identify potential drug therapy problems and optimization opportunities",
           "Improved medication safety and efficacy",
           PRIMARY, C.DRUG_THERAPY_PROBLEM, C.DOSING_ISSUE),
        _t("dose_adjustment", "Dose Optimization",
           "Adjust medication dosage based on clinical parameters",
           "Optimize therapeutic effect while minimizing adverse effects",
           "Improved clinical response with reduced side effects",
           PRIMARY, C.DRUG_THERAPY_PROBLEM, C.DOSING_ISSUE),
        _t("alternative_therapy", "Alternative Medication Selection",
           "Consider alternative medications with better safety/efficacy profile",
           "Current therapy may not be optimal for patient-specific factors",
           "Better therapeutic outcomes with improved tolerability",
           SECONDARY, C.DRUG_THERAPY_PROBLEM, C.ADVERSE_DRUG_REACTION, C.CONTRAINDICATION),
        _t("additional_monitoring", "Enhanced Monitoring Protocol",
           "Implement additional monitoring parameters",
           "Ensure early detection of therapeutic response or adverse effects",
           "Improved safety monitoring and outcome tracking",
           SECONDARY, C.DRUG_THERAPY_PROBLEM, C.ADVERSE_DRUG_REACTION),
    ),
    C.ADVERSE_DRUG_REACTION: (
        _t("discontinuation", "Medication Discontinuation",
           "Discontinue the offending medication",
           "Eliminate the source of adverse drug reaction",
           "Resolution of adverse effects",
           PRIMARY, C.ADVERSE_DRUG_REACTION, C.CONTRAINDICATION),
        _t("dose_adjustment", "Dose Reduction",
           "Reduce medication dose to minimize adverse effects",
           "Maintain therapeutic benefit while reducing toxicity",
           "Reduced adverse effects while preserving efficacy",
           PRIMARY, C.ADVERSE_DRUG_REACTION, C.DOSING_ISSUE),
        _t("alternative_therapy", "Switch to Alternative Agent",
           "Replace with medication having better tolerability profile",
           "Maintain therapeutic effect with improved safety profile",
           "Continued therapeutic benefit without adverse effects",
           SECONDARY, C.ADVERSE_DRUG_REACTION, C.CONTRAINDICATION),
        _t("additional_monitoring", "Intensive Safety Monitoring",
           "Implement close monitoring for adverse effect resolution",
           "Ensure safe resolution and prevent recurrence",
           "Safe management and prevention of future ADRs",
           SECONDARY, C.ADVERSE_DRUG_REACTION),
    ),
    C.MEDICATION_NONADHERENCE: (
        _t("patient_counseling", "Patient Education and Counseling",
           "Provide comprehensive medication education",
           "Address knowledge gaps and misconceptions about medications",
           "Improved understanding and medication adherence",
           PRIMARY, C.MEDICATION_NONADHERENCE),
        _t("medication_review", "Adherence-Focused Medication Review",
           "Review regimen complexity and adherence barriers",
           "Identify and address specific adherence challenges",
           "Simplified regimen with improved adherence",
           PRIMARY, C.MEDICATION_NONADHERENCE),
        _t("alternative_therapy", "Adherence-Friendly Alternatives",
           "Consider medications with better adherence profiles",
           "Reduce dosing frequency or complexity to improve adherence",
           "Improved adherence through simplified regimen",
           SECONDARY, C.MEDICATION_NONADHERENCE),
        _t("additional_monitoring", "Adherence Monitoring Program",
           "Implement systematic adherence monitoring",
           "Track adherence patterns and provide timely interventions",
           "Sustained improvement in medication adherence",
           SECONDARY, C.MEDICATION_NONADHERENCE),
    ),
    C.DRUG_INTERACTION: (
        _t("medication_review", "Drug Interaction Assessment",
           "Comprehensive review of all medications for interactions",
           "Identify and manage clinically significant drug interactions",
           "Elimination of harmful drug interactions",
           PRIMARY, C.DRUG_INTERACTION),
        _t("dose_adjustment", "Interaction-Based Dose Modification",
           "Adjust doses to account for drug interactions",
           "Maintain efficacy while minimizing interaction effects",
           "Safe concurrent use of interacting medications",
           PRIMARY, C.DRUG_INTERACTION, C.DOSING_ISSUE),
        _t("alternative_therapy", "Non-Interacting Alternative",
           "Replace one medication with non-interacting alternative",
           "Eliminate interaction while maintaining therapeutic goals",
           "Continued therapy without drug interactions",
           SECONDARY, C.DRUG_INTERACTION),
        _t("additional_monitoring", "Interaction Monitoring Protocol",
           "Implement monitoring for interaction effects",
           "Early detection of interaction-related problems",
           "Safe management of unavoidable interactions",
           SECONDARY, C.DRUG_INTERACTION),
    ),
    C.DOSING_ISSUE: (
        _t("dose_adjustment", "Dose Optimization",
           "Adjust dose based on patient-specific factors",
           "Optimize dose for individual patient characteristics",
           "Improved therapeutic response with optimal safety",
           PRIMARY, C.DOSING_ISSUE),
        _t("medication_review", "Dosing Regimen Review",
           "Comprehensive review of dosing appropriateness",
           "Ensure dosing aligns with current guidelines and patient factors",
           "Evidence-based dosing optimization",
           PRIMARY, C.DOSING_ISSUE),
        _t("additional_monitoring", "Therapeutic Drug Monitoring",
           "Implement monitoring of drug levels or therapeutic markers",
           "Guide dose adjustments based on objective measurements",
           "Precision dosing with improved outcomes",
           SECONDARY, C.DOSING_ISSUE),
        _t("alternative_therapy", "Alternative Dosing Strategy",
           "Consider alternative formulations or dosing approaches",
           "Improve dosing convenience or therapeutic profile",
           "Better dosing outcomes through alternative approach",
           SECONDARY, C.DOSING_ISSUE),
    ),
    C.CONTRAINDICATION: (
        _t("discontinuation", "Immediate Discontinuation",
           "Stop contraindicated medication immediately",
           "Prevent serious adverse outcomes from contraindicated use",
           "Elimination of contraindication risk",
           PRIMARY, C.CONTRAINDICATION),
        _t("alternative_therapy", "Safe Alternative Selection",
           "Replace with medication without contraindications",
           "Maintain therapeutic benefit while ensuring safety",
           "Continued therapy without contraindication risk",
           PRIMARY, C.CONTRAINDICATION),
        _t("physician_consultation", "Specialist Consultation",
           "Consult with specialist for complex contraindication management",
           "Obtain expert guidance for challenging clinical situations",
           "Expert-guided safe medication management",
           SECONDARY, C.CONTRAINDICATION),
        _t("additional_monitoring", "Risk Mitigation Monitoring",
           "Implement intensive monitoring if discontinuation not possible",
           "Minimize risk when contraindicated medication must be continued",
           "Safest possible management of unavoidable contraindication",
           SECONDARY, C.CONTRAINDICATION),
    ),
    C.OTHER: (
        _t("medication_review", "Comprehensive Assessment",
           "Thorough evaluation of the clinical situation",
           "Understand the specific nature of the clinical issue",
           "Clear identification and management plan",
           PRIMARY, C.OTHER),
        _t("patient_counseling", "Patient Education",
           "Provide relevant patient education and counseling",
           "Ensure patient understanding of their medication therapy",
           "Improved patient knowledge and engagement",
           PRIMARY, C.OTHER),
        _t("physician_consultation", "Healthcare Provider Consultation",
           "Collaborate with other healthcare providers",
           "Ensure coordinated care and optimal outcomes",
           "Integrated healthcare team approach",
           SECONDARY, C.OTHER),
        _t("custom", "Custom Intervention Strategy",
           "Develop tailored intervention for unique situation",
           "Address specific clinical needs not covered by standard approaches",
           "Individualized solution for complex clinical issue",
           SECONDARY, C.OTHER),
    ),
}

DEFAULT_TEMPLATE = STRATEGY_MAPPINGS[C.OTHER][3]


def _ranked(templates) -> list[StrategyTemplate]:
    """Primary before secondary, then label."""
    return sorted(templates, key=lambda t: (t.priority != PRIMARY, t.label.casefold()))


def _as_category(category: Any) -> InterventionCategory | None:
    try:
        return InterventionCategory(category)
    except ValueError:
        return None


# =============================================================================
# Lookups
# =============================================================================

def recommended_for(category: InterventionCategory | str) -> list[StrategyTemplate]:
    """Templates for a category; unknown categories get the custom template."""
    known = _as_category(category)
    if known is None:
        return [DEFAULT_TEMPLATE]
    return _ranked(STRATEGY_MAPPINGS[known])


def all_strategies() -> list[StrategyTemplate]:
    """One template per strategy type, sorted by label."""
    seen: dict[StrategyType, StrategyTemplate] = {}
    for templates in STRATEGY_MAPPINGS.values():
        for template in templates:
            seen.setdefault(template.type, template)
    return sorted(seen.values(), key=lambda t: t.label.casefold())


def for_categories(categories: list[InterventionCategory | str]) -> list[StrategyTemplate]:
    """Union of templates applicable to any given category, one per type."""
    seen: dict[StrategyType, StrategyTemplate] = {}
    for category in categories:
        known = _as_category(category)
        if known is None:
            continue
        for template in recommended_for(known):
            if template.type not in seen and known in template.applicable_categories:
                seen[template.type] = template
    return _ranked(seen.values())


def by_type(strategy_type: StrategyType | str) -> StrategyTemplate | None:
    for templates in STRATEGY_MAPPINGS.values():
        for template in templates:
            if template.type.value == str(getattr(strategy_type, "value", strategy_type)):
                return template
    return None


# =============================================================================
# Validation
# =============================================================================

@dataclass
class StrategyValidation:
    is_valid: bool
    errors: list[str]


def validate_custom(strategy: dict[str, Any]) -> StrategyValidation:
    """Check a user-authored strategy, reporting every violated rule."""
    errors = []
    strategy_type = strategy.get("type")
    description = strategy.get("description") or ""
    rationale = strategy.get("rationale") or ""
    expected = strategy.get("expected_outcome") or ""

    if getattr(strategy_type, "value", strategy_type) != StrategyType.CUSTOM.value:
        errors.append('Custom strategy must have type "custom"')
    if len(description.strip()) < 10:
        errors.append("Strategy description must be at least 10 characters")
    if len(rationale.strip()) < 10:
        errors.append("Strategy rationale must be at least 10 characters")
    if len(expected.strip()) < 20:
        errors.append("Expected outcome must be at least 20 characters")
    if len(description) > 500:
        errors.append("Strategy description cannot exceed 500 characters")
    if len(rationale) > 500:
        errors.append("Strategy rationale cannot exceed 500 characters")
    if len(expected) > 500:
        errors.append("Expected outcome cannot exceed 500 characters")

    return StrategyValidation(is_valid=not errors, errors=errors)


# =============================================================================
# Recommendation
# =============================================================================

@dataclass
class PatientFactors:
    """Optional context used to bias ranking."""
    age: int | None = None
    conditions: list[str] = field(default_factory=list)
    allergies: list[str] = field(default_factory=list)
    current_medications: list[str] = field(default_factory=list)


_ADHERENCE_WORDS = ("adherence", "compliance")
_ADHERENCE_TYPES = (StrategyType.PATIENT_COUNSELING, StrategyType.MEDICATION_REVIEW)


def generate(
    category: InterventionCategory | str,
    priority: InterventionPriority | str,
    issue_description: str = "",
    patient_factors: PatientFactors | None = None,
) -> list[StrategyTemplate]:
    """
    Ranked recommendations, at most four.

    High and critical priorities only get primary templates. Adherence
    wording lifts counselling and review; more than five current
    medications lifts medication review; patients over 65 get a
    pharmacokinetics note on dose adjustments. Non-adherence always
    includes patient counselling.
    """
    priority = InterventionPriority(priority)
    candidates = recommended_for(category)
    if priority in (InterventionPriority.HIGH, InterventionPriority.CRITICAL):
        candidates = [t for t in candidates if t.priority == PRIMARY]

    text = (issue_description or "").lower()
    mentions_adherence = any(word in text for word in _ADHERENCE_WORDS)
    factors = patient_factors or PatientFactors()

    scored = []
    for position, template in enumerate(candidates):
        boost = 0
        if mentions_adherence and template.type in _ADHERENCE_TYPES:
            boost += 2
        if len(factors.current_medications) > 5 and template.type == StrategyType.MEDICATION_REVIEW:
            boost += 1
        if factors.age is not None and factors.age > 65 and template.type == StrategyType.DOSE_ADJUSTMENT:
            template = replace(template, rationale=template.rationale + AGE_PK_NOTE)
        scored.append((-boost, position, template))

    ranked = [t for _, _, t in sorted(scored, key=lambda s: (s[0], s[1]))][:MAX_RECOMMENDATIONS]

    if _as_category(category) == C.MEDICATION_NONADHERENCE and not any(
        t.type == StrategyType.PATIENT_COUNSELING for t in ranked
    ):
        counselling = next(
            t for t in STRATEGY_MAPPINGS[C.MEDICATION_NONADHERENCE]
            if t.type == StrategyType.PATIENT_COUNSELING
        )
        ranked = [counselling, *ranked][:MAX_RECOMMENDATIONS]
    return ranked


# =============================================================================
# Drug Therapy Problem Bridge
# =============================================================================

_DTP_CATEGORY_MAP = {
    "untreated_indication": C.DRUG_THERAPY_PROBLEM,
    "improper_drug_selection": C.DRUG_THERAPY_PROBLEM,
    "subtherapeutic_dosage": C.DOSING_ISSUE,
    "failure_to_receive_drug": C.MEDICATION_NONADHERENCE,
    "overdosage": C.DOSING_ISSUE,
    "adverse_drug_reaction": C.ADVERSE_DRUG_REACTION,
    "drug_interaction": C.DRUG_INTERACTION,
    "drug_use_without_indication": C.DRUG_THERAPY_PROBLEM,
}


def map_dtp_category(dtp_category: str) -> InterventionCategory:
    """Intervention category for a drug therapy problem category."""
    return _DTP_CATEGORY_MAP.get(dtp_category, C.OTHER)


def priority_from_problem(severity: str | None, dtp_category: str | None) -> InterventionPriority:
    if severity == "critical" or dtp_category == "adverse_drug_reaction":
        return InterventionPriority.CRITICAL
    if severity == "major" or dtp_category == "drug_interaction":
        return InterventionPriority.HIGH
    if severity == "moderate":
        return InterventionPriority.MEDIUM
    return InterventionPriority.LOW


def strategies_for_dtp(dtp_category: str) -> list[InterventionStrategy]:
    """Starter strategy for an intervention raised from a drug therapy problem."""
    if dtp_category == "adverse_drug_reaction":
        choice = ("discontinuation", "Consider discontinuing the offending medication",
                  "Eliminate source of adverse drug reaction", "Resolution of adverse effects")
    elif dtp_category == "drug_interaction":
        choice = ("medication_review", "Review all medications for interactions",
                  "Identify and manage drug interactions", "Elimination of harmful interactions")
    elif dtp_category in ("subtherapeutic_dosage", "overdosage"):
        choice = ("dose_adjustment", "Adjust medication dosage",
                  "Optimize therapeutic effect", "Improved clinical response")
    else:
        choice = ("medication_review", "Comprehensive medication review",
                  "Address identified drug therapy problem", "Optimized medication therapy plan")
    strategy_type, description, rationale, outcome = choice
    return [InterventionStrategy(
        type=StrategyType(strategy_type),
        description=description,
        rationale=rationale,
        expected_outcome=outcome,
        priority=PRIMARY,
    )]
