import uuid

from fastapi import APIRouter, Depends, Response

from leaseledger.core.clock import Deadline
from leaseledger.core.deps import get_current_principal, get_deadline, get_schedule_engine
from leaseledger.schemas.common import Envelope, ok
from leaseledger.schemas.lease import RentScheduleCreate, RentScheduleResponse, RentScheduleUpdate
from leaseledger.services.access import Principal
from leaseledger.services.schedules import ScheduleEngine

router = APIRouter(prefix="/rent-schedules", tags=["rent-schedules"])


@router.get("", response_model=Envelope[list[RentScheduleResponse]])
async def list_schedules(
    lease_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    schedules: ScheduleEngine = Depends(get_schedule_engine),
):
    items = await schedules.list_for_lease(principal, lease_id)
    return ok([RentScheduleResponse.model_validate(s) for s in items])


@router.post("", response_model=Envelope[RentScheduleResponse], status_code=201)
async def upsert_schedule(
    payload: RentScheduleCreate,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    schedules: ScheduleEngine = Depends(get_schedule_engine),
    deadline: Deadline = Depends(get_deadline),
):
    """Define the lease's schedule; repeating the call updates it in place."""
    schedule, created = await schedules.uow.run(
        lambda: schedules.upsert(principal, payload.lease_id, payload), deadline
    )
    if not created:
        response.status_code = 200
    return ok(
        RentScheduleResponse.model_validate(schedule),
        "Rent schedule created" if created else "Rent schedule updated",
    )


@router.get("/{schedule_id}", response_model=Envelope[RentScheduleResponse])
async def get_schedule(
    schedule_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    schedules: ScheduleEngine = Depends(get_schedule_engine),
):
    return ok(RentScheduleResponse.model_validate(await schedules.get(principal, schedule_id)))


@router.put("/{schedule_id}", response_model=Envelope[RentScheduleResponse])
async def update_schedule(
    schedule_id: uuid.UUID,
    payload: RentScheduleUpdate,
    principal: Principal = Depends(get_current_principal),
    schedules: ScheduleEngine = Depends(get_schedule_engine),
    deadline: Deadline = Depends(get_deadline),
):
    schedule = await schedules.uow.run(lambda: schedules.update(principal, schedule_id, payload), deadline)
    return ok(RentScheduleResponse.model_validate(schedule), "Rent schedule updated")


@router.delete("/{schedule_id}", response_model=Envelope[RentScheduleResponse])
async def disable_schedule(
    schedule_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    schedules: ScheduleEngine = Depends(get_schedule_engine),
    deadline: Deadline = Depends(get_deadline),
):
    schedule = await schedules.uow.run(lambda: schedules.disable(principal, schedule_id), deadline)
    return ok(RentScheduleResponse.model_validate(schedule), "Rent schedule disabled")
