"""
Incident Log API Routes (employer)

Per-employee log of prior incidents (bitacora). Exports include the
latest unarchived entries.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..auth import get_current_employer
from ..dependencies import get_incident_log
from ..errors import NotFound
from ..models.db_models import EmployeeDB, EmployerDB
from ..services.evidence import IncidentLog


router = APIRouter(tags=["incidents"])


class AddIncidentRequest(BaseModel):
    kind: str = Field(..., description="late_arrival, absence, verbal_warning, ...")
    title: str = Field(..., description="Short title")
    occurred_on: date = Field(..., description="Day it happened")
    description: Optional[str] = Field(None, description="Details")
    category: Optional[str] = Field(None, description="Free grouping label")


@router.post("/employees/{employee_id}/incidents", response_model=dict, status_code=201)
async def add_incident(
    employee_id: str,
    request: AddIncidentRequest,
    log: IncidentLog = Depends(get_incident_log),
    employer: EmployerDB = Depends(get_current_employer),
):
    entry = log.add(
        employer.id,
        employee_id,
        kind=request.kind,
        title=request.title,
        occurred_on=request.occurred_on,
        description=request.description,
        category=request.category,
    )
    return IncidentLog.summary(entry)


@router.get("/employees/{employee_id}/incidents", response_model=list)
async def list_incidents(
    employee_id: str,
    log: IncidentLog = Depends(get_incident_log),
    employer: EmployerDB = Depends(get_current_employer),
):
    employee = log.db.query(EmployeeDB).filter(
        EmployeeDB.id == employee_id,
        EmployeeDB.employer_id == employer.id,
    ).first()
    if employee is None:
        raise NotFound("Employee not found")
    return [IncidentLog.summary(e) for e in log.recent_for_employee(employee.id)]


@router.post("/incidents/{incident_id}/archive", response_model=dict)
async def archive_incident(
    incident_id: str,
    log: IncidentLog = Depends(get_incident_log),
    employer: EmployerDB = Depends(get_current_employer),
):
    entry = log.archive(incident_id, employer.id)
    return {"id": entry.id, "archived": True}
