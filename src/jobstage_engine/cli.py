"""Provisioning CLI: ``jobstage-provision``.

Connects to the database and provisions a workflow template for one
company, replacing its current stage graph.  Re-run with ``--run-id`` to
resume an interrupted run.

Examples::

    # Provision the bundled builder workflow
    uv run jobstage-provision --company 4f7c... --template builder_preset

    # Resume an interrupted run
    uv run jobstage-provision --company 4f7c... --template builder_preset \\
        --run-id prov_1a2b3c4d5e6f

    # List available templates
    uv run jobstage-provision --list
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid

from jobstage_engine.errors import ProvisioningFailed, WorkflowError
from jobstage_engine.models.provisioning import ProvisioningReport
from jobstage_engine.templates import TemplateStore

logger = logging.getLogger(__name__)


async def run_provisioning(
    *,
    company_id: uuid.UUID,
    template_id: str,
    initiated_by: str,
    run_id: str | None = None,
    template_dir: str | None = None,
) -> ProvisioningReport:
    """Provision *template_id* for *company_id* in a fresh database session."""
    # Lazy imports to avoid loading DB machinery at module import time
    from jobstage_db.engine import dispose_engine, session_scope
    from jobstage_engine.workflow import StageWorkflow

    templates = TemplateStore(template_dir)
    templates.load()
    workflow = StageWorkflow(templates)
    try:
        async with session_scope() as db:
            return await workflow.provision_template(
                db,
                company_id=company_id,
                template_id=template_id,
                initiated_by=initiated_by,
                run_id=run_id,
            )
    finally:
        await dispose_engine()


def _print_report(report: ProvisioningReport) -> None:
    print(f"Run:        {report.run_id}")
    print(f"Template:   {report.template_id}")
    for attempt in report.tier_attempts:
        status = "ok" if attempt.succeeded else f"blocked ({attempt.error})"
        print(f"  tier {attempt.tier:<12} {status}")
    print(f"Final tier: {report.final_tier}")
    print(
        f"Created:    {len(report.created_stage_ids)} stages, "
        f"{len(report.created_question_ids)} questions, "
        f"{len(report.created_rule_ids)} rules"
    )
    if report.reused_ids:
        print(f"Reused:     {len(report.reused_ids)} rows from an earlier attempt")
    if report.retired_stage_ids:
        print(f"Retired:    {len(report.retired_stage_ids)} old stages")


def cli() -> None:
    """Console-script entry point: ``jobstage-provision``."""
    parser = argparse.ArgumentParser(
        prog="jobstage-provision",
        description="Replace a company's stage graph with a workflow template.",
    )
    parser.add_argument("--company", type=uuid.UUID, help="Company (tenant) id")
    parser.add_argument("--template", default="builder_preset", help="Template id")
    parser.add_argument(
        "--initiated-by", default="cli", help="Recorded as created_by on new stages",
    )
    parser.add_argument("--run-id", default=None, help="Resume this provisioning run")
    parser.add_argument(
        "--template-dir",
        default=None,
        help="Template directory (default: $JOBSTAGE_TEMPLATE_DIR or the bundled set)",
    )
    parser.add_argument(
        "--list", action="store_true", default=False, help="List templates and exit",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    if args.list:
        store = TemplateStore(args.template_dir)
        store.load()
        for template_id in store.list_ids():
            print(template_id)
        sys.exit(0)

    if args.company is None:
        parser.error("--company is required")

    try:
        report = asyncio.run(
            run_provisioning(
                company_id=args.company,
                template_id=args.template,
                initiated_by=args.initiated_by,
                run_id=args.run_id,
                template_dir=args.template_dir,
            )
        )
    except ProvisioningFailed as exc:
        logger.error("Provisioning failed: %s", exc)
        if exc.report is not None:
            _print_report(exc.report)
        sys.exit(1)
    except WorkflowError as exc:
        logger.error("Provisioning failed: %s", exc)
        sys.exit(1)

    _print_report(report)
    sys.exit(0)
