import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

from . import settings

logger = logging.getLogger(__name__)


class Breadcrumb(BaseModel):
    """What this process had open, kept outside memory so a crash can be repaired"""
    session_id: str
    task_id: int
    user_id: Optional[int] = None
    start_time: Optional[datetime] = None


class BreadcrumbStore:
    """
    Single-slot JSON file holding the breadcrumb of the open session.

    The ledger stays the source of truth; this only lets the next run find a
    session it left open without scanning the ledger.
    """

    def __init__(self, path=None):
        self.path = Path(path) if path is not None else settings.BREADCRUMB_PATH

    def load(self) -> Optional[Breadcrumb]:
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read session breadcrumb {self.path}: {e}")
            return None

        try:
            return Breadcrumb.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable session breadcrumb {self.path}: {e}")
            self.clear()
            return None

    def save(self, crumb: Breadcrumb) -> bool:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(crumb.model_dump_json())
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.warning(f"Could not write session breadcrumb {self.path}: {e}")
            return False
        return True

    def clear(self):
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove session breadcrumb {self.path}: {e}")
