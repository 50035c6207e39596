import logging
from typing import Optional
from sqlalchemy.orm import Session


class BaseService:
    """
    Common base for domain services: holds the session and the acting user,
    and exposes logging helpers bound to the concrete service's module.
    """

    def __init__(self, db: Session, actor_id: Optional[int] = None):
        self.db = db
        self.actor_id = actor_id
        self._logger = logging.getLogger(self.__class__.__module__)

    def log_info(self, message: str, **extra):
        self._logger.info(message, extra=extra or None)

    def log_warning(self, message: str, **extra):
        self._logger.warning(message, extra=extra or None)
