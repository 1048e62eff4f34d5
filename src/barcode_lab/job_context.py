from __future__ import annotations

import contextvars

# Job-scoped correlation id, blank if not set
job_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("job_id", default="")
