"""Request context management for observability.

Context variables for request tracking across async boundaries.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Telegram user currently being served (generation gate / webhook self-heal)
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

# Payment reference currently being reconciled
reference_var: ContextVar[str] = ContextVar("reference", default="")
