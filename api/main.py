"""Serverless entrypoint: serves the matching API under /api."""
import logging

from matching_engine.api.main import app
from matching_engine.shared.db import init_schema

logger = logging.getLogger(__name__)

# The platform forwards /api/* here with the prefix intact.
app.root_path = "/api"


@app.on_event("startup")
def bootstrap_schema():
    try:
        init_schema()
    except Exception as e:
        # Cold starts must still serve /health when the database is unreachable.
        logger.error(f"Schema bootstrap failed: {e}", exc_info=True)
