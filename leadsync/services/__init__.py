"""Services"""

# Importing change_capture registers its mapper events on Lead.
from leadsync.services import change_capture  # noqa: F401

__all__ = ["change_capture"]
