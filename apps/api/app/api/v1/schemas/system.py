from datetime import datetime

from pydantic import BaseModel


class SystemHealthOut(BaseModel):
    ok: bool
    version: str
    time_utc: datetime
    billing_store: str
    supabase_ok: bool | None = None
