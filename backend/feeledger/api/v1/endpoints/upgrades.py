# feeledger/api/v1/endpoints/upgrades.py
#
# Semester promotion: one student, a batch, or a rollback.
# Every attempt (successful or not) leaves an upgrade log.

from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from feeledger.api.deps import get_services
from feeledger.core.security import CurrentUser, require_admin, require_staff
from feeledger.schemas.common import APIResponse
from feeledger.schemas.upgrades import (
    BulkUpgradeRequest, BulkUpgradeResult, RollbackRequest, SemesterUpgradeLog, Student,
    UpgradeStats, UpgradeStudentRequest, UpgradeType,
)
from feeledger.services.container import Services

router = APIRouter(prefix="/upgrades", tags=["Semester Upgrades"])


# ═══════════════════════════════════════════════════════════
# READS
# ═══════════════════════════════════════════════════════════

@router.get("/eligible", response_model=APIResponse[List[Student]])
async def eligible_students(
    course_id: Optional[str] = Query(default=None),
    semester: Optional[int] = Query(default=None, ge=1, le=12),
    academic_year: Optional[str] = Query(default=None),
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    students = services.upgrades.eligible_students(course_id, semester, academic_year)
    return APIResponse(data=students, message=f"{len(students)} eligible student(s)")


@router.get("/history", response_model=APIResponse[List[SemesterUpgradeLog]])
async def upgrade_history(
    student_id: Optional[str] = Query(default=None),
    course_id: Optional[str] = Query(default=None),
    academic_year: Optional[str] = Query(default=None),
    upgrade_type: Optional[UpgradeType] = Query(default=None),
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    logs = services.upgrades.history(student_id, course_id, academic_year, upgrade_type)
    return APIResponse(data=logs)


@router.get("/stats", response_model=APIResponse[UpgradeStats])
async def upgrade_stats(
    academic_year: Optional[str] = Query(default=None),
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    return APIResponse(data=services.upgrades.stats(academic_year))


@router.get("/{log_id}", response_model=APIResponse[SemesterUpgradeLog])
async def get_upgrade_log(
    log_id: str,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    return APIResponse(data=services.upgrades.get_log(log_id))


# ═══════════════════════════════════════════════════════════
# ACTIONS
# ═══════════════════════════════════════════════════════════

@router.post("/students/{student_id}", response_model=APIResponse[SemesterUpgradeLog], status_code=201)
async def upgrade_student(
    student_id: str,
    body: UpgradeStudentRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    log = await services.upgrades.upgrade_one(
        student_id, user.user_id, body.reason, body.service_changes, body.notes,
    )
    return APIResponse(
        data=log,
        message=f"Upgraded from semester {log.from_semester} to {log.to_semester}",
    )


@router.post("/bulk", response_model=APIResponse[BulkUpgradeResult])
async def bulk_upgrade(
    body: BulkUpgradeRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    result = await services.upgrades.upgrade_bulk(
        body.student_ids, user.user_id, body.reason, body.notes, body.exclude_students,
    )
    return APIResponse(
        data=result,
        message=f"{len(result.successful)} upgraded, {len(result.failed)} failed",
    )


@router.post("/{log_id}/rollback", response_model=APIResponse[SemesterUpgradeLog])
async def rollback_upgrade(
    log_id: str,
    body: RollbackRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    log = await services.upgrades.rollback(log_id, user.user_id, body.reason)
    message = "Upgrade rolled back"
    if log.rollback_warnings:
        message += f" with {len(log.rollback_warnings)} warning(s)"
    return APIResponse(data=log, message=message)
