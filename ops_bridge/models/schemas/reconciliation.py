"""Reconciliation trigger payloads."""
from typing import Optional
from pydantic import BaseModel, Field

class BackfillTrigger(BaseModel):
    """Manual backfill request; ``dry_run`` falls back to RECON_DRY_RUN when omitted."""
    dry_run: Optional[bool] = Field(default=None, description="Compute and report without writing")
    batch_code: Optional[str] = Field(default=None, max_length=64)
    include_catalog: bool = Field(default=False, description="Run the catalog merge before bookings")

class GateTrigger(BaseModel):
    batch_code: Optional[str] = Field(default=None, max_length=64)
    write_report: bool = True
