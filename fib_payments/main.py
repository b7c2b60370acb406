import logging
import os

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from fib_payments.database import get_db, init_db
from fib_payments.fib_service import FibPaymentClient
from fib_payments.payment_service import CallbackOutcome, handle_callback
from fib_payments.routes import get_fib_client, router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="FIB Payment Service")

app.include_router(router)

init_db()


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/webhook")
async def fib_callback(
    request: Request,
    db: Session = Depends(get_db),
    client: FibPaymentClient = Depends(get_fib_client),
):
    """
    Status callback from FIB. Unknown payment ids get a 404 body; every
    other outcome, failures included, answers 200 so FIB does not retry.

    TODO: verify the sender once FIB provides a callback signing secret;
    for now any caller can trigger a status re-fetch for a known payment id.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    outcome = await run_in_threadpool(handle_callback, db, client, payload)
    if outcome is CallbackOutcome.UNKNOWN_PAYMENT:
        return JSONResponse(status_code=404, content={"message": outcome.value})
    return {"message": outcome.value}
