from fastapi import Request

from backend.services.ledger import AttendanceLedgerOps
from backend.services.presenter import SessionRegistry
from backend.services.verification import VerificationPipeline


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_pipeline(request: Request) -> VerificationPipeline:
    return request.app.state.pipeline


def get_ledger(request: Request) -> AttendanceLedgerOps:
    return request.app.state.ledger
