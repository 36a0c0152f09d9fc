"""Workflow constants shared across the SDK.

These values are referenced by the graph store, the provisioning service and
the template store.  Several can be overridden via environment variables so
that deployments can adjust them without code changes.
"""

import os
from pathlib import Path

# Stages with sequence_order at or above this offset are retired: they stay
# resolvable for history but never appear in the active graph.  Must match
# the partial unique index on ``job_stages``.
# Overridable via RETIRED_ORDER_OFFSET env var.
RETIRED_ORDER_OFFSET = int(os.getenv("RETIRED_ORDER_OFFSET", "10000"))

# Prefix for stage names retired by the rename strategy; formatted with a
# UTC timestamp so repeated runs never collide.
RENAMED_STAGE_PREFIX = "[ARCHIVED_{ts}] "

# applied_by value written to audit rows for automatic transitions.
SYSTEM_ACTOR = "system"

# Normalized yes/no answers.
YES = "yes"
NO = "no"

# Directory holding the bundled YAML workflow templates.
# Overridable via JOBSTAGE_TEMPLATE_DIR env var.
TEMPLATE_DIR = Path(
    os.getenv("JOBSTAGE_TEMPLATE_DIR", str(Path(__file__).resolve().parent / "templates"))
)

# Teardown strategies tried in order when replacing a company's graph.
TEARDOWN_TIERS: tuple[str, ...] = ("hard_delete", "smart_clear", "archive", "rename")
