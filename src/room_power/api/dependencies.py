# src/room_power/api/dependencies.py
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from ..core.status import StatusReporter


async def get_status_reporter(request: Request) -> StatusReporter:
    reporter = getattr(request.app.state, "status_reporter", None)
    if reporter is None:
        raise HTTPException(status_code=503, detail="Status reporter not available")
    return reporter

StatusDependency = Annotated[StatusReporter, Depends(get_status_reporter)]
