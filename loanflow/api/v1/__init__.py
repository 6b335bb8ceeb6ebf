from fastapi import APIRouter

from loanflow.api.v1.routers import audit_logs, auth, health, loan_applications, queries

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(auth.router)
api_router.include_router(loan_applications.router)
api_router.include_router(queries.router)
api_router.include_router(audit_logs.router)

__all__ = ["api_router"]
