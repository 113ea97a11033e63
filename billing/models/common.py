# billing/models/common.py

from typing import Any, Optional

from pydantic import BaseModel


class OperationResult(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    message: Optional[str] = None


class JobResult(BaseModel):
    job: str
    processed: int = 0
    succeeded: int = 0
    generated: int = 0
    errors: list[dict] = []
    details: dict = {}
