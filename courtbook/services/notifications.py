from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from courtbook.models import Notification

logger = logging.getLogger(__name__)

ABSENCES_LINK = "/profile?tab=absences"


class Notifier:
    """
    In-app notification sink.

    Writes through its own session so it never joins the caller's
    transaction; callers invoke it only after their commit. Delivery is
    best effort: a failure is logged and reported as ``False``.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def notify(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        link: Optional[str] = ABSENCES_LINK,
        credit_id: Optional[int] = None,
    ) -> bool:
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            link=link,
            credit_id=credit_id,
        )
        try:
            with Session(self.engine) as session:
                session.add(notification)
                session.commit()
        except IntegrityError:
            logger.info(f"Notification {type} for credit {credit_id} already sent, skipping")
            return False
        except SQLAlchemyError:
            logger.exception(f"Failed to store {type} notification for user {user_id}")
            return False
        return True
