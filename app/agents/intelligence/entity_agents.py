"""Contact, company and deal intelligence agents.

Each analysis loads the entity from the CRM, runs the agent engine with the
shared tool set, and normalizes the model's JSON report into the result
payload stored on the job.
"""

import json
from typing import Any

from app.agents.intelligence.engine import AgentEngine, CancelCheck, ProgressSink
from app.agents.intelligence.prompts import SYSTEM_PROMPTS, build_task
from app.agents.intelligence.provider import ModelProvider
from app.agents.intelligence.tools import default_intelligence_tools
from app.agents.intelligence.types import AgentResult
from app.core import hubspot_service
from app.core.logging import get_logger
from app.core.schemas_intelligence_jobs import EntityType

logger = get_logger(__name__)

CRM_OBJECT_TYPES = {
    EntityType.contact: "contacts",
    EntityType.company: "companies",
    EntityType.deal: "deals",
}

SCORE_FIELDS = {
    EntityType.contact: "engagementScore",
    EntityType.company: "healthScore",
    EntityType.deal: "dealScore",
}

LIST_FIELDS = ("insights", "recommendedActions", "riskFactors", "opportunitySignals")

DEAL_FIELDS = ("executiveSummary", "stakeholders", "timeline", "dealStageAnalysis")


# =============================================================================
# Context
# =============================================================================


def _full_name(props: dict[str, Any]) -> str | None:
    name = " ".join(p for p in (props.get("firstname"), props.get("lastname")) if p)
    return name or None


def build_entity_context(
    entity_type: EntityType,
    entity_id: str,
    entity_name: str,
    record: dict[str, Any],
) -> dict[str, Any]:
    """Shape a CRM record into the context the agent starts from."""
    props = record.get("properties", {}) or {}
    context: dict[str, Any] = {
        "entity_type": entity_type.value,
        "entity_id": entity_id,
        "entity_name": entity_name,
        "crm_object_type": CRM_OBJECT_TYPES[entity_type],
    }

    if entity_type == EntityType.contact:
        context.update(
            {
                "name": _full_name(props) or entity_name,
                "email": props.get("email"),
                "job_title": props.get("jobtitle"),
                "company": props.get("company"),
                "lifecycle_stage": props.get("lifecyclestage"),
                "last_contacted": props.get("notes_last_contacted"),
            }
        )
    elif entity_type == EntityType.company:
        context.update(
            {
                "name": props.get("name") or entity_name,
                "domain": props.get("domain"),
                "industry": props.get("industry"),
                "size": props.get("numberofemployees"),
                "annual_revenue": props.get("annualrevenue"),
                "location": ", ".join(p for p in (props.get("city"), props.get("country")) if p)
                or None,
            }
        )
    else:
        context.update(
            {
                "name": props.get("dealname") or entity_name,
                "amount": props.get("amount"),
                "stage": props.get("dealstage"),
                "pipeline": props.get("pipeline"),
                "close_date": props.get("closedate"),
                "probability": props.get("hs_deal_stage_probability"),
                "next_step": props.get("hs_next_step"),
            }
        )

    context["properties"] = props
    return context


# =============================================================================
# Result normalization
# =============================================================================


def _as_string_list(value: Any) -> list[str]:
    # Models occasionally return a JSON-encoded list as a string
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            try:
                value = json.loads(stripped)
            except json.JSONDecodeError:
                return [stripped]
        else:
            return [stripped] if stripped else []

    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _as_score(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def normalize_result(entity_type: EntityType, output: Any) -> dict[str, Any]:
    """
    Build the stored result payload from the agent's final report.

    Returns:
        {intelligence, <score field>, insights, recommendedActions, riskFactors,
        opportunitySignals} plus executiveSummary, stakeholders, timeline and
        dealStageAnalysis for deals
    """
    if isinstance(output, dict):
        intelligence = output
    else:
        intelligence = {"rawAnalysis": "" if output is None else str(output)}

    score_field = SCORE_FIELDS[entity_type]
    score = intelligence.get(score_field)
    if score is None and entity_type == EntityType.deal:
        score = intelligence.get("healthScore")

    result: dict[str, Any] = {
        "intelligence": intelligence,
        score_field: _as_score(score),
    }
    for field in LIST_FIELDS:
        result[field] = _as_string_list(intelligence.get(field))

    if entity_type == EntityType.deal:
        for field in DEAL_FIELDS:
            if intelligence.get(field) is not None:
                result[field] = intelligence[field]

    return result


# =============================================================================
# Entry point
# =============================================================================


def build_entity_agent(entity_type: EntityType, provider: ModelProvider | None = None) -> AgentEngine:
    return AgentEngine(
        name=f"{entity_type.value}_intelligence",
        system_prompt=SYSTEM_PROMPTS[entity_type.value],
        tools=default_intelligence_tools(),
        provider=provider,
    )


async def run_entity_analysis(
    entity_type: EntityType,
    entity_id: str,
    entity_name: str,
    on_progress: ProgressSink,
    should_cancel: CancelCheck | None = None,
    provider: ModelProvider | None = None,
) -> AgentResult:
    """
    Analyze one CRM entity.

    Raises:
        ValueError: If the CRM token is not configured
        httpx.HTTPStatusError: If the entity cannot be loaded from the CRM
    """
    entity_type = EntityType(entity_type)

    record = await hubspot_service.get_object(CRM_OBJECT_TYPES[entity_type], entity_id)
    context = build_entity_context(entity_type, entity_id, entity_name, record)

    engine = build_entity_agent(entity_type, provider)
    result = await engine.run(build_task(entity_type.value, entity_name), context, on_progress, should_cancel)

    if result.success:
        result.output = normalize_result(entity_type, result.output)
    logger.info(
        f"{entity_type.value} analysis finished: success={result.success}",
        extra={"entity_type": entity_type.value, "entity_id": entity_id},
    )
    return result
