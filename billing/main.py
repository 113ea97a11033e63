# billing/main.py

import logging

from fastapi import FastAPI

from billing.api.analytics import router as analytics_router
from billing.api.invoices import router as invoices_router
from billing.api.payments import router as payments_router
from billing.api.recurring import router as recurring_router
from billing.config import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
)

app = FastAPI(
    title="Invoice Ledger API",
    version="0.1.0",
)

@app.get("/health")
def health_check():
    return {"status": "ok"}

app.include_router(invoices_router)
app.include_router(payments_router)
app.include_router(recurring_router)
app.include_router(analytics_router)
