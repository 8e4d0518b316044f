from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query

from .routes import router as ved_router
from ..rules.rates_loader import RateTableError, load_all_ved_rates, load_ved_rates
from ..settings import settings

# ---------------- Logging ----------------
logging.basicConfig(
    level=settings.logging_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("roadtax-api")

API_VERSION = "1.0.0"

app = FastAPI(
    title=settings.api_title,
    version=API_VERSION,
    description="UK Vehicle Excise Duty calculation and commission pricing",
)
app.include_router(ved_router)


# ----- Startup -----
@app.on_event("startup")
def _startup():
    """Validate the full rate registry; refuse to start on bad data."""
    try:
        versions = load_all_ved_rates(registry_path=settings.ved_rates_path)
    except (KeyError, ValueError, OSError):
        logger.exception("VED rate registry failed validation; refusing to start.")
        raise
    logger.info(
        "Startup complete, %d rate version(s) loaded (latest %s).",
        len(versions),
        versions[-1].effective.isoformat(),
    )


# ----- System -----
@app.get("/health", tags=["System"])
def health() -> Dict[str, Any]:
    rates_ok = True
    effective: Optional[str] = None
    try:
        effective = load_ved_rates(registry_path=settings.ved_rates_path).effective.isoformat()
    except Exception:
        logger.warning("Rate table unavailable for health check", exc_info=True)
        rates_ok = False
    return {
        "ok": rates_ok,
        "version": API_VERSION,
        "rates_ok": rates_ok,
        "rates_effective": effective,
    }


# ----- Rates -----
@app.get("/rates", tags=["Rates"])
def rates(on: Optional[date] = Query(None, description="Rates effective on this date")) -> Dict[str, Any]:
    try:
        table = load_ved_rates(on, registry_path=settings.ved_rates_path)
    except RateTableError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return table.summary()


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("roadtax_mvp.api.main:app", host="0.0.0.0", port=8000)
