"""
Orchestrator Package - Process Entry Point.

============================================================
PACKAGE OVERVIEW
============================================================
Runs one unit of journal work per invocation: schema setup,
sync runs with the job retry contract, the private-stream
correlator, market-structure collection or retention cleanup.

============================================================
ARCHITECTURE
============================================================

    +-----------------------------------------------------+
    |                    JournalRuntime                   |
    |-----------------------------------------------------|
    |  RuntimeMode        |  7 modes of operation         |
    |  JobRunner          |  timeout, retry, no overlap   |
    |  SyncScheduler      |  due-connection selection     |
    |  CredentialResolver |  API keys per connection      |
    |  CLI                |  Command-line interface       |
    +-----------------------------------------------------+

============================================================
QUICK START
============================================================
Command line usage::

    python -m orchestrator.cli --mode init-db
    python -m orchestrator.cli --mode full-sync --user-id 42
    python -m orchestrator.cli --mode cleanup --dry-run

Programmatic usage::

    import asyncio
    from orchestrator import JournalRuntime

    runtime = JournalRuntime.from_url("sqlite:///trade_journal.db")
    summary = asyncio.run(runtime.quick_sync(user_id=42, exchange="bybit"))

============================================================
EXPORTS
============================================================
"""

# ============================================================
# Models
# ============================================================
from orchestrator.models import (
    JobOutcome,
    JobStatus,
    RunSummary,
    RuntimeMode,
)

# ============================================================
# Credentials
# ============================================================
from orchestrator.credentials import (
    CredentialResolver,
    Credentials,
    EnvCredentialResolver,
)

# ============================================================
# Jobs
# ============================================================
from orchestrator.jobs import (
    JobRunner,
    SyncJob,
    SyncScheduler,
)

# ============================================================
# Core
# ============================================================
from orchestrator.core import (
    JournalRuntime,
    setup_logging,
)

# ============================================================
# CLI
# ============================================================
from orchestrator.cli import (
    async_main,
    create_parser,
    main,
    print_banner,
    validate_args,
)

# ============================================================
# Package metadata
# ============================================================
__version__ = "1.0.0"

__all__ = [
    # Models
    "JobOutcome",
    "JobStatus",
    "RunSummary",
    "RuntimeMode",

    # Credentials
    "CredentialResolver",
    "Credentials",
    "EnvCredentialResolver",

    # Jobs
    "JobRunner",
    "SyncJob",
    "SyncScheduler",

    # Core
    "JournalRuntime",
    "setup_logging",

    # CLI
    "async_main",
    "create_parser",
    "main",
    "print_banner",
    "validate_args",
]
