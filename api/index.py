"""
Vercel entry point for the session context API.

Adapts the FastAPI application to serverless functions with Mangum. The
service wiring is created lazily on the first request because the ASGI
lifespan is disabled here.
"""

import os
import sys
from pathlib import Path

# Add project root to path for imports
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

os.environ.setdefault("DEBUG", "False")

from app import app as application
from mangum import Mangum

# lifespan='off' so startup errors cannot crash the function
handler = Mangum(application, lifespan="off")

__all__ = ["handler", "application"]
