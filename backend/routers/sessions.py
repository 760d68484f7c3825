import asyncio

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from backend.dependencies import get_registry
from backend.imaging import render_qr_png
from backend.schemas import Location, Presenter
from backend.security import require_presenter
from backend.services.presenter import PresenterSessionRunner, SessionRegistry

router = APIRouter()


class LocationReport(BaseModel):
    location: Location


def _session_view(runner: PresenterSessionRunner | None) -> dict:
    if runner is None or not runner.session.active:
        error = runner.last_error.as_dict() if runner is not None and runner.last_error else None
        return {"active": False, "session_id": None, "token": None, "qr_value": None, "error": error}

    token = runner.session.token
    return {
        "active": True,
        "session_id": runner.session.session_id,
        "state": runner.session.state.value,
        "anchor": runner.session.anchor.model_dump() if runner.session.anchor else None,
        "token": token.model_dump(by_alias=True),
        "qr_value": token.to_json(),
        "countdown_seconds": runner.countdown_seconds,
        "error": runner.last_error.as_dict() if runner.last_error else None,
    }


@router.post("/sessions/start")
async def start_session(
    payload: LocationReport,
    presenter: Presenter = Depends(require_presenter),
    registry: SessionRegistry = Depends(get_registry),
):
    runner = await registry.start(presenter.uid, payload.location)
    return _session_view(runner)


@router.post("/sessions/location")
async def report_location(
    payload: LocationReport,
    presenter: Presenter = Depends(require_presenter),
    registry: SessionRegistry = Depends(get_registry),
):
    registry.location_feed(presenter.uid).report(payload.location)
    return {"ok": True}


@router.get("/sessions/current")
async def current_session(
    presenter: Presenter = Depends(require_presenter),
    registry: SessionRegistry = Depends(get_registry),
):
    return _session_view(registry.get(presenter.uid))


@router.get("/sessions/current/qr.png")
async def current_session_qr(
    presenter: Presenter = Depends(require_presenter),
    registry: SessionRegistry = Depends(get_registry),
):
    runner = registry.get(presenter.uid)
    if runner is None or runner.session.token is None:
        raise HTTPException(status_code=404, detail="No active session.")
    return Response(
        content=await asyncio.to_thread(render_qr_png, runner.session.token.to_json()),
        media_type="image/png",
        headers={"Cache-Control": "no-store"},
    )


@router.post("/sessions/stop")
async def stop_session(
    presenter: Presenter = Depends(require_presenter),
    registry: SessionRegistry = Depends(get_registry),
):
    stopped = await registry.stop(presenter.uid)
    return {"ok": True, "stopped": stopped}
