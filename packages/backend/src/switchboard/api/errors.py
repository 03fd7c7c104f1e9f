"""Service error → HTTP error translation shared by the routers.

NotFoundError → 404, InvalidTransitionError → 409. A 409 detail carries
the error kind and the status that was actually observed, so a caller
that lost a race can tell what happened.
"""

from fastapi import HTTPException

from switchboard.services.errors import InvalidTransitionError, NotFoundError


def not_found(e: NotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail={"error": e.kind, "message": str(e)})


def conflict(e: InvalidTransitionError) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"error": e.kind, "status": e.current_status, "message": str(e)},
    )
