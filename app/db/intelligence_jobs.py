"""Intelligence job database operations (table: intelligence_jobs)."""

from datetime import datetime, timezone
from typing import Any

from app.core.logging import get_logger
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "intelligence_jobs"
LATEST_COMPLETE_VIEW = "intelligence_jobs_latest_complete"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_job(record: dict[str, Any]) -> dict[str, Any]:
    """
    Insert a new job record.

    Args:
        record: Serialized AnalysisJob

    Returns:
        The inserted row

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        response = supabase.table(TABLE).insert(record).execute()

        if not response.data:
            raise ValueError("No data returned from create_job")

        logger.info(
            f"Created intelligence job v{record.get('version')} for "
            f"{record.get('entity_type')} {record.get('entity_id')}",
            extra={"job_id": record.get("id")},
        )
        return response.data[0]

    except Exception as e:
        logger.error(f"Failed to create intelligence job: {e}", extra={"job_id": record.get("id")})
        raise


def create_jobs(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Insert several job records in one round-trip.

    Raises:
        Exception: If database operation fails
    """
    if not records:
        return []

    supabase = get_supabase()

    try:
        response = supabase.table(TABLE).insert(records).execute()

        if not response.data:
            raise ValueError("No data returned from create_jobs")

        logger.info(f"Created {len(response.data)} intelligence jobs")
        return response.data

    except Exception as e:
        logger.error(f"Failed to create {len(records)} intelligence jobs: {e}")
        raise


def get_job(job_id: str) -> dict[str, Any] | None:
    """
    Get a job by ID.

    Returns:
        Job row, or None if not found
    """
    supabase = get_supabase()

    try:
        response = supabase.table(TABLE).select("*").eq("id", job_id).limit(1).execute()
        return response.data[0] if response.data else None

    except Exception as e:
        logger.error(f"Failed to get intelligence job {job_id}: {e}", extra={"job_id": job_id})
        raise


def update_job(
    job_id: str,
    fields: dict[str, Any],
    only_if_status: list[str] | None = None,
) -> dict[str, Any] | None:
    """
    Update a job, optionally only while it is in one of `only_if_status`.

    Args:
        job_id: Job ID
        fields: Columns to set (JSON-serializable)
        only_if_status: Guard statuses; the write is skipped otherwise

    Returns:
        Updated row, or None if the job is missing or the guard did not match
    """
    supabase = get_supabase()

    try:
        query = supabase.table(TABLE).update({**fields, "updated_at": _utc_now_iso()}).eq("id", job_id)
        if only_if_status:
            query = query.in_("status", only_if_status)
        response = query.execute()

        if not response.data:
            logger.debug(
                f"Update skipped for intelligence job {job_id} (guard: {only_if_status})",
                extra={"job_id": job_id},
            )
            return None
        return response.data[0]

    except Exception as e:
        logger.error(f"Failed to update intelligence job {job_id}: {e}", extra={"job_id": job_id})
        raise


def get_latest_completed_job(entity_type: str, entity_id: str) -> dict[str, Any] | None:
    """Most recent `complete` job for an entity, or None."""
    supabase = get_supabase()

    try:
        response = (
            supabase.table(TABLE)
            .select("*")
            .eq("entity_type", entity_type)
            .eq("entity_id", entity_id)
            .eq("status", "complete")
            .order("completed_at", desc=True)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    except Exception as e:
        logger.error(
            f"Failed to get latest job for {entity_type} {entity_id}: {e}",
            extra={"entity_type": entity_type, "entity_id": entity_id},
        )
        raise


def get_latest_completed_jobs(entities: list[tuple[str, str]]) -> dict[tuple[str, str], dict[str, Any]]:
    """
    Most recent `complete` job per entity, fetched in a single query.

    Reads the latest-complete view, so at most one row per (type, id) comes
    back regardless of lineage length.

    Args:
        entities: (entity_type, entity_id) pairs

    Returns:
        Mapping from (entity_type, entity_id) to its latest completed row.
        Entities with no completed job are absent.
    """
    if not entities:
        return {}

    wanted = set(entities)
    supabase = get_supabase()

    try:
        response = (
            supabase.table(LATEST_COMPLETE_VIEW)
            .select("*")
            .in_("entity_id", sorted({entity_id for _, entity_id in wanted}))
            .execute()
        )

        # The id filter can match the same id under another entity type
        return {
            (row["entity_type"], row["entity_id"]): row
            for row in response.data or []
            if (row["entity_type"], row["entity_id"]) in wanted
        }

    except Exception as e:
        logger.error(f"Failed to get latest jobs for {len(entities)} entities: {e}")
        raise


def list_entity_jobs(
    entity_type: str,
    entity_id: str,
    statuses: list[str] | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Jobs for one entity, most recently completed first."""
    supabase = get_supabase()

    try:
        query = (
            supabase.table(TABLE)
            .select("*")
            .eq("entity_type", entity_type)
            .eq("entity_id", entity_id)
        )
        if statuses:
            query = query.in_("status", statuses)
        response = query.order("completed_at", desc=True).limit(limit).execute()
        return response.data or []

    except Exception as e:
        logger.error(
            f"Failed to list jobs for {entity_type} {entity_id}: {e}",
            extra={"entity_type": entity_type, "entity_id": entity_id},
        )
        raise


def list_jobs(
    entity_type: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """List jobs, newest first, with optional filters."""
    supabase = get_supabase()

    try:
        query = supabase.table(TABLE).select("*")
        if entity_type:
            query = query.eq("entity_type", entity_type)
        if status:
            query = query.eq("status", status)
        response = (
            query.order("started_at", desc=True).range(offset, offset + limit - 1).execute()
        )
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to list intelligence jobs: {e}")
        raise
