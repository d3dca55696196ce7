#!/usr/bin/env python3
"""Check the intelligence_jobs table exists; print its DDL if it does not."""
import sys
from pathlib import Path

sys.path.insert(0, '.')

from app.db.supabase_client import get_supabase

MIGRATION_FILE = Path(__file__).parent / "migrations" / "0001_intelligence_jobs.sql"


def run_migration():
    supabase = get_supabase()

    try:
        print("🔍 Checking intelligence_jobs table...")
        supabase.table('intelligence_jobs').select('id, version, history, retry_config').limit(1).execute()
        supabase.table('intelligence_jobs_latest_complete').select('id').limit(1).execute()
        print("✅ intelligence_jobs table and latest-complete view are ready")

    except Exception as e:
        print(f"❌ Check failed: {e}")
        print("💡 Run this SQL in your Supabase SQL editor:\n")
        print(MIGRATION_FILE.read_text())
        sys.exit(1)


if __name__ == "__main__":
    run_migration()
