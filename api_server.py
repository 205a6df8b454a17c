"""
Minimal API server wiring the invariant monitor into HTTP endpoints.

Usage:
  pip install -e .
  VAULT_CONFIG_PATH=config/vaults.json uvicorn api_server:app --port 8000
"""

import logging
import os
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from vault_monitor import VaultMonitor

logger = logging.getLogger(__name__)


class EvaluateRequest(BaseModel):
    vault_id: str = Field(..., description="Vault identifier from the registry.")


class EvaluateAllRequest(BaseModel):
    vault_ids: Optional[List[str]] = Field(default=None, description="Subset of vaults; all registered when omitted.")
    max_workers: int = Field(default=8, ge=1, le=64)


def create_app(monitor: Optional[VaultMonitor] = None) -> FastAPI:
    if monitor is None:
        logging.basicConfig(level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
        monitor = VaultMonitor.from_env()

    app = FastAPI(title="Vault Invariant Monitor API", version="0.1.0")
    app.state.monitor = monitor
    logger.info("Serving invariant checks for %d vault(s)", len(monitor.vault_ids()))

    def require_vault(vault_id: str) -> None:
        if vault_id not in monitor.registry:
            raise HTTPException(
                status_code=404,
                detail=f"Unknown vault '{vault_id}'. Available: {monitor.vault_ids()}",
            )

    @app.get("/health")
    def health() -> Dict[str, object]:
        return {"ok": True, "vaults": monitor.vault_ids()}

    @app.post("/evaluate")
    def evaluate(payload: EvaluateRequest) -> Dict[str, object]:
        require_vault(payload.vault_id)
        return monitor.run_cycle(payload.vault_id)

    @app.post("/evaluate/all")
    def evaluate_all(payload: EvaluateAllRequest) -> Dict[str, object]:
        if payload.vault_ids is None:
            records = monitor.run_all(max_workers=payload.max_workers)
        else:
            for vault_id in payload.vault_ids:
                require_vault(vault_id)
            records = [monitor.run_cycle(vault_id) for vault_id in payload.vault_ids]
        return {
            "ok": all(r["ok"] for r in records),
            "alerts": [r["vault"]["id"] for r in records if r["summary"] and r["summary"]["alert"]],
            "records": records,
        }

    @app.get("/vaults/{vault_id}/history")
    def history(vault_id: str) -> Dict[str, object]:
        require_vault(vault_id)
        return {"vault_id": vault_id, "snapshot": monitor.history(vault_id)}

    return app


app = create_app()
