"""
API route modules.

Import all route modules here for easy access.
"""

from studyflow.api.routes import jobs, units

__all__ = ["jobs", "units"]
