"""HubSpot CRM service: records, associations and engagements."""

from typing import Any

import httpx

from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)

OBJECT_TYPES = ("contacts", "companies", "deals")

DEFAULT_PROPERTIES: dict[str, list[str]] = {
    "contacts": [
        "firstname",
        "lastname",
        "email",
        "jobtitle",
        "company",
        "lifecyclestage",
        "hs_lead_status",
        "lastmodifieddate",
        "notes_last_contacted",
        "num_contacted_notes",
        "hs_email_last_open_date",
    ],
    "companies": [
        "name",
        "domain",
        "industry",
        "numberofemployees",
        "annualrevenue",
        "city",
        "country",
        "lifecyclestage",
        "hs_lastmodifieddate",
        "notes_last_contacted",
    ],
    "deals": [
        "dealname",
        "amount",
        "dealstage",
        "pipeline",
        "closedate",
        "createdate",
        "hs_lastmodifieddate",
        "hs_deal_stage_probability",
        "hubspot_owner_id",
        "hs_next_step",
    ],
}

ENGAGEMENT_TYPES: dict[str, list[str]] = {
    "notes": ["hs_note_body", "hs_timestamp"],
    "emails": ["hs_email_subject", "hs_email_text", "hs_email_direction", "hs_timestamp"],
    "calls": ["hs_call_title", "hs_call_body", "hs_call_duration", "hs_timestamp"],
    "meetings": ["hs_meeting_title", "hs_meeting_body", "hs_meeting_outcome", "hs_timestamp"],
}

# Association filter names in the CRM search API
_SINGULAR = {"contacts": "contact", "companies": "company", "deals": "deal"}

# Engagement bodies can be very long
MAX_BODY_CHARS = 1_000


def _headers() -> dict[str, str]:
    settings = get_settings()
    if not settings.HUBSPOT_ACCESS_TOKEN:
        raise ValueError("HUBSPOT_ACCESS_TOKEN not configured")
    return {
        "Authorization": f"Bearer {settings.HUBSPOT_ACCESS_TOKEN}",
        "Content-Type": "application/json",
    }


def _check_object_type(object_type: str) -> None:
    if object_type not in OBJECT_TYPES:
        raise ValueError(f"Unsupported object type: {object_type}")


def _client() -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(
        base_url=settings.HUBSPOT_BASE_URL,
        headers=_headers(),
        timeout=settings.HUBSPOT_TIMEOUT,
    )


async def get_object(
    object_type: str,
    object_id: str,
    properties: list[str] | None = None,
) -> dict[str, Any]:
    """
    Fetch one CRM record.

    Args:
        object_type: contacts, companies or deals
        object_id: HubSpot record ID
        properties: Properties to return (defaults per object type)

    Returns:
        Dict with id, properties, created_at, updated_at

    Raises:
        ValueError: If the token is missing or object type unsupported
        httpx.HTTPStatusError: If HubSpot rejects the request (404, 429, ...)
    """
    _check_object_type(object_type)
    props = properties or DEFAULT_PROPERTIES[object_type]

    async with _client() as client:
        response = await client.get(
            f"/crm/v3/objects/{object_type}/{object_id}",
            params={"properties": ",".join(props)},
        )
        response.raise_for_status()

    data = response.json()
    logger.debug(f"Fetched {object_type}/{object_id}")
    return {
        "id": data.get("id", object_id),
        "properties": data.get("properties", {}),
        "created_at": data.get("createdAt"),
        "updated_at": data.get("updatedAt"),
    }


async def get_associations(
    object_type: str,
    object_id: str,
    to_object_type: str,
    limit: int = 25,
) -> list[dict[str, Any]]:
    """
    List records of `to_object_type` associated with a record, with their default properties.

    Raises:
        ValueError: If the token is missing or an object type is unsupported
        httpx.HTTPStatusError: If HubSpot rejects the request
    """
    _check_object_type(object_type)
    _check_object_type(to_object_type)

    async with _client() as client:
        response = await client.get(
            f"/crm/v4/objects/{object_type}/{object_id}/associations/{to_object_type}",
            params={"limit": limit},
        )
        response.raise_for_status()
        ids = [str(row["toObjectId"]) for row in response.json().get("results", [])][:limit]

        if not ids:
            return []

        batch = await client.post(
            f"/crm/v3/objects/{to_object_type}/batch/read",
            json={
                "properties": DEFAULT_PROPERTIES[to_object_type],
                "inputs": [{"id": i} for i in ids],
            },
        )
        batch.raise_for_status()

    return [
        {"id": row.get("id"), "properties": row.get("properties", {})}
        for row in batch.json().get("results", [])
    ]


def _engagement_summary(kind: str, row: dict[str, Any]) -> dict[str, Any]:
    props = row.get("properties", {}) or {}
    body = (
        props.get("hs_note_body")
        or props.get("hs_email_text")
        or props.get("hs_call_body")
        or props.get("hs_meeting_body")
        or ""
    )
    return {
        "id": row.get("id"),
        "type": kind.rstrip("s"),
        "timestamp": props.get("hs_timestamp"),
        "title": (
            props.get("hs_email_subject")
            or props.get("hs_call_title")
            or props.get("hs_meeting_title")
        ),
        "direction": props.get("hs_email_direction"),
        "outcome": props.get("hs_meeting_outcome"),
        "body": body[:MAX_BODY_CHARS],
    }


async def list_engagements(
    object_type: str,
    object_id: str,
    limit: int = 20,
) -> list[dict[str, Any]]:
    """
    Recent notes, emails, calls and meetings for a record, newest first.

    Raises:
        ValueError: If the token is missing or object type unsupported
        httpx.HTTPStatusError: If HubSpot rejects the request
    """
    _check_object_type(object_type)
    limit = max(1, min(limit, 100))

    engagements: list[dict[str, Any]] = []
    async with _client() as client:
        for kind, props in ENGAGEMENT_TYPES.items():
            response = await client.post(
                f"/crm/v3/objects/{kind}/search",
                json={
                    "filterGroups": [
                        {
                            "filters": [
                                {
                                    "propertyName": f"associations.{_SINGULAR[object_type]}",
                                    "operator": "EQ",
                                    "value": object_id,
                                }
                            ]
                        }
                    ],
                    "sorts": [{"propertyName": "hs_timestamp", "direction": "DESCENDING"}],
                    "properties": props,
                    "limit": limit,
                },
            )
            response.raise_for_status()
            engagements.extend(
                _engagement_summary(kind, row) for row in response.json().get("results", [])
            )

    engagements.sort(key=lambda e: e.get("timestamp") or "", reverse=True)
    logger.debug(f"Found {len(engagements)} engagements for {object_type}/{object_id}")
    return engagements[:limit]
