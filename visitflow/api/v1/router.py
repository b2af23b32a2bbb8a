"""API v1 router configuration."""

from fastapi import APIRouter

from visitflow.api.v1.endpoints import (
    appointments,
    doctors,
    health,
    invoices,
    payments,
    tokens,
)

api_router = APIRouter()

# Include routers
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(doctors.router, prefix="/doctors", tags=["Doctors"])
api_router.include_router(appointments.router, prefix="/appointments", tags=["Appointments"])
api_router.include_router(payments.router, prefix="/payments", tags=["Payments"])
api_router.include_router(tokens.router, prefix="/tokens", tags=["Tokens"])
api_router.include_router(invoices.router, prefix="/invoices", tags=["Invoices"])
