"""Template endpoints: list workflow templates and provision one.

Provisioning replaces the caller's company graph with the template.  It
commits step by step, so a failed run can be resumed by posting again with
the same ``run_id`` (reported in the response).
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_engine.errors import PermissionDenied
from jobstage_engine.models.job import ActingUser
from jobstage_engine.models.provisioning import ProvisioningReport
from jobstage_engine.workflow import StageWorkflow

from jobstage_server.dependencies import get_acting_user, get_db, get_workflow

router = APIRouter(tags=["templates"])


class TemplateSummary(BaseModel):
    id: str
    name: str
    description: str | None = None
    stage_count: int


class ProvisionRequest(BaseModel):
    """Body for POST /templates/{template_id}/provision."""
    run_id: str | None = None


@router.get("/templates")
async def list_templates(
    user: ActingUser = Depends(get_acting_user),
    workflow: StageWorkflow = Depends(get_workflow),
) -> list[TemplateSummary]:
    summaries = []
    for template_id in workflow.templates.list_ids():
        template = workflow.templates.get(template_id)
        summaries.append(TemplateSummary(
            id=template.id,
            name=template.name,
            description=template.description,
            stage_count=len(template.stages),
        ))
    return summaries


@router.post("/templates/{template_id}/provision")
async def provision_template(
    template_id: str,
    body: ProvisionRequest | None = None,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> ProvisioningReport:
    """Admin-only: replace the company's stage graph with a template.

    Raises 409 with the provisioning report when every teardown tier fails.
    """
    if not user.is_admin:
        raise PermissionDenied("Provisioning requires an admin role")
    return await workflow.provision_template(
        db,
        company_id=user.company_id,
        template_id=template_id,
        initiated_by=user.user_id,
        run_id=body.run_id if body else None,
    )
