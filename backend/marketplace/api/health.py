from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health", tags=["health"])
def health(request: Request):
    state = request.app.state
    db_ok = state.database.ping()
    try:
        payment_ok = state.payment_gateway.health_check()
    except Exception:
        payment_ok = False
    try:
        notify_ok = state.notifier.health_check()
    except Exception:
        notify_ok = False

    return {
        "status": "ok" if db_ok and payment_ok and notify_ok else "degraded",
        "db": db_ok,
        "payment_adapter": payment_ok,
        "notification_adapter": notify_ok,
    }
