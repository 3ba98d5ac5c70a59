"""Gateway orchestration for clawgate."""

from clawgate.gateway.http import create_app
from clawgate.gateway.service import Gateway

__all__ = ["Gateway", "create_app"]
