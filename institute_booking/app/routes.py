from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, EmailStr
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .booking import BookingRequest, ClientInfo, book_appointment
from .dependencies import get_db, get_redis_client, get_session_factory
from .errors import BookingError, InternalFailure
from .slots import compute_eligible_services, compute_free_starts
import logging

router = APIRouter()


class ClientPayload(BaseModel):
    first_name: str
    last_name: str
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class BookAppointmentRequest(BaseModel):
    start_at: str
    service_ids: List[str]
    practitioner_id: Optional[str] = None
    client: ClientPayload
    notes: Optional[str] = None


def to_http_exception(error: BookingError) -> HTTPException:
    if isinstance(error, InternalFailure):
        return HTTPException(status_code=error.status_code, detail="Internal server error")
    return HTTPException(status_code=error.status_code, detail=error.message)


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/free-starts")
def get_free_starts(
        date: str = Query(...),
        practitioner_id: Optional[str] = Query(None),
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client)
):
    try:
        return compute_free_starts(db, date, practitioner_id, redis_client=redis_client)
    except (InternalFailure, SQLAlchemyError) as e:
        logging.error(f"Error in get_free_starts for {date}: {str(e)}")
        return {"date": date, "step_minutes": config.FREE_START_STEP_MINUTES, "starts": []}
    except BookingError as e:
        raise to_http_exception(e)


@router.get("/eligible-services")
def get_eligible_services(
        start_at: str = Query(...),
        practitioner_id: Optional[str] = Query(None),
        db: Session = Depends(get_db)
):
    try:
        return compute_eligible_services(db, start_at, practitioner_id)
    except (InternalFailure, SQLAlchemyError) as e:
        logging.error(f"Error in get_eligible_services for {start_at}: {str(e)}")
        return {"start_at": start_at, "max_free_minutes": 0, "services": []}
    except BookingError as e:
        raise to_http_exception(e)


@router.post("/appointments", status_code=status.HTTP_201_CREATED)
def create_appointment(
        payload: BookAppointmentRequest,
        session_factory=Depends(get_session_factory),
        redis_client=Depends(get_redis_client)
):
    logging.info(f"create_appointment for {payload.start_at} services={payload.service_ids}")
    booking_request = BookingRequest(
        start_at=payload.start_at,
        service_ids=payload.service_ids,
        practitioner_id=payload.practitioner_id,
        client=ClientInfo(
            first_name=payload.client.first_name,
            last_name=payload.client.last_name,
            email=payload.client.email,
            phone=payload.client.phone
        ),
        notes=payload.notes
    )

    try:
        result = book_appointment(session_factory, booking_request, redis_client=redis_client)
    except BookingError as e:
        raise to_http_exception(e)

    return {
        "appointment_id": result.appointment_id,
        "start_at": result.start.astimezone(config.INSTITUTE_TZ).isoformat(),
        "end_at": result.end.astimezone(config.INSTITUTE_TZ).isoformat(),
        "status": result.status,
        "practitioner_id": result.practitioner_id,
        "practitioner_name": result.practitioner_name,
        "service_summary": result.service_summary,
        "total_price_cents": result.total_price_cents,
    }
