# feeledger/api/v1/endpoints/ledgers.py
#
# Student fee ledgers: creation, fines, discounts, custom fees,
# optional items and template assignment.
# Staff (admin / accountant) change ledgers; a student may read
# their own.

from typing import List, Optional
from fastapi import APIRouter, Depends

from feeledger.api.deps import get_services
from feeledger.core.security import (
    CurrentUser, ensure_can_view, get_current_user, require_admin, require_staff,
)
from feeledger.schemas.common import APIResponse
from feeledger.schemas.ledger import (
    BareLedgerCreate, CustomFeeCreate, DiscountCreate, FineCreate, ItemInclusionUpdate,
    LedgerFromTemplateCreate, LedgerSummary, ServiceSyncRequest, StudentFeeLedger,
)
from feeledger.schemas.templates import AssignmentResult
from feeledger.services.container import Services

router = APIRouter(tags=["Fee Ledgers"])


# ═══════════════════════════════════════════════════════════
# CREATION
# ═══════════════════════════════════════════════════════════

@router.post("/ledgers", response_model=APIResponse[StudentFeeLedger], status_code=201)
async def create_ledger_from_template(
    body: LedgerFromTemplateCreate,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    ledger = await services.ledgers.create_from_template(body, user.user_id)
    return APIResponse(data=ledger, message=f"Fee ledger created. Net amount: {ledger.net_amount}")


@router.post("/ledgers/bare", response_model=APIResponse[StudentFeeLedger], status_code=201)
async def create_bare_ledger(
    body: BareLedgerCreate,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    ledger = await services.ledgers.create_bare(body, user.user_id)
    return APIResponse(data=ledger, message="Empty fee ledger created")


@router.post(
    "/templates/{template_id}/assign",
    response_model=APIResponse[AssignmentResult],
)
async def assign_template(
    template_id: str,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    result = await services.ledgers.assign_template_to_eligible_students(template_id, user.user_id)
    return APIResponse(
        data=result,
        message=(f"{len(result.assigned)} assigned, {len(result.skipped)} skipped, "
                 f"{len(result.failed)} failed"),
    )


# ═══════════════════════════════════════════════════════════
# READS
# ═══════════════════════════════════════════════════════════

@router.get("/ledgers/overdue", response_model=APIResponse[List[LedgerSummary]])
async def list_overdue_ledgers(
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    return APIResponse(data=[LedgerSummary.of(l) for l in services.ledgers.overdue()])


@router.get("/students/{student_id}/ledgers", response_model=APIResponse[List[StudentFeeLedger]])
async def list_student_ledgers(
    student_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    ensure_can_view(user, student_id, "fees")
    return APIResponse(data=services.ledgers.list_for_student(student_id))


@router.get("/ledgers/{ledger_id}", response_model=APIResponse[StudentFeeLedger])
async def get_ledger(
    ledger_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    ledger = services.ledgers.get(ledger_id)
    ensure_can_view(user, ledger.student_id, "fees")
    return APIResponse(data=ledger)


@router.get("/ledgers/{ledger_id}/summary", response_model=APIResponse[LedgerSummary])
async def get_ledger_summary(
    ledger_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    summary = services.ledgers.summary(ledger_id)
    ensure_can_view(user, summary.student_id, "fees")
    return APIResponse(data=summary)


# ═══════════════════════════════════════════════════════════
# FINES / DISCOUNTS / CUSTOM FEES
# ═══════════════════════════════════════════════════════════

@router.post("/ledgers/{ledger_id}/fines", response_model=APIResponse[StudentFeeLedger])
async def add_fine(
    ledger_id: str,
    body: FineCreate,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    ledger = await services.ledgers.add_fine(ledger_id, body, user.user_id)
    return APIResponse(data=ledger, message="Fine added")


@router.post("/ledgers/{ledger_id}/fines/{fine_id}/settle", response_model=APIResponse[StudentFeeLedger])
async def settle_fine(
    ledger_id: str,
    fine_id: str,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    ledger = await services.ledgers.settle_fine(ledger_id, fine_id, user.user_id)
    return APIResponse(data=ledger, message="Fine settled")


@router.post("/ledgers/{ledger_id}/discounts", response_model=APIResponse[StudentFeeLedger])
async def add_discount(
    ledger_id: str,
    body: DiscountCreate,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    ledger = await services.ledgers.add_discount(ledger_id, body, user.user_id)
    return APIResponse(data=ledger, message="Discount applied")


@router.post("/ledgers/{ledger_id}/custom-fees", response_model=APIResponse[StudentFeeLedger])
async def add_custom_fee(
    ledger_id: str,
    body: CustomFeeCreate,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    ledger = await services.ledgers.add_custom_fee(ledger_id, body, user.user_id)
    return APIResponse(data=ledger, message=f"'{body.name}' added")


@router.patch("/ledgers/{ledger_id}/items/{item_id}", response_model=APIResponse[StudentFeeLedger])
async def set_item_inclusion(
    ledger_id: str,
    item_id: str,
    body: ItemInclusionUpdate,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    ledger = await services.ledgers.set_item_inclusion(ledger_id, item_id, body.included, user.user_id)
    return APIResponse(data=ledger, message="Item included" if body.included else "Item excluded")


@router.post("/students/{student_id}/services/sync", response_model=APIResponse[Optional[StudentFeeLedger]])
async def sync_service_items(
    student_id: str,
    body: ServiceSyncRequest,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    ledger = await services.ledgers.sync_service_items(
        student_id, body.service, body.opted, user.user_id,
    )
    if ledger is None:
        return APIResponse(data=None, message="No ledger for the current term; nothing to sync")
    return APIResponse(data=ledger, message=f"{body.service.value} items synced")
