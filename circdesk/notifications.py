"""
Notification and activity-log collaborators.

Both are fire-and-forget from the coordinator's point of view: it calls them
after a commit and only logs when they fail. The in-memory implementations
here keep what they receive so the facade and tests can inspect it.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from .domain import ActivityEntry, Notification, new_id

LOGGER = logging.getLogger("circdesk.notifications")


class NotificationService:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._notifications: Dict[str, Notification] = {}

    def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        related_id: Optional[str] = None,
        priority: str = "medium",
    ) -> None:
        n = Notification(
            notification_id=new_id("ntf"),
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            related_id=related_id,
            priority=priority,
        )
        with self._lock:
            self._notifications[n.notification_id] = n
        LOGGER.info("notification created for user %s: %s", user_id, title)

    def list_for_user(self, user_id: str) -> List[Notification]:
        with self._lock:
            items = [n for n in self._notifications.values() if n.user_id == user_id]
        return sorted(items, key=lambda n: n.created_at)

    # ---- specific notification creators
    def borrow_approved(self, user_id: str, book_title: str, borrow_id: str) -> None:
        self.notify(
            user_id,
            "borrow_approved",
            "Borrow Request Approved",
            f'Your borrow request for "{book_title}" has been approved.',
            related_id=borrow_id,
            priority="high",
        )

    def book_returned(self, user_id: str, book_title: str, borrow_id: str) -> None:
        self.notify(
            user_id,
            "book_returned",
            "Book Returned",
            f'"{book_title}" has been returned. Thank you!',
            related_id=borrow_id,
        )

    def reservation_approved(
        self, user_id: str, book_title: str, reservation_id: str
    ) -> None:
        self.notify(
            user_id,
            "reservation_approved",
            "Reservation Approved",
            f'Your reservation for "{book_title}" has been approved! '
            "You can now pick it up from the library.",
            related_id=reservation_id,
            priority="high",
        )

    def reservation_converted_to_borrow(
        self, user_id: str, book_title: str, reservation_id: str
    ) -> None:
        self.notify(
            user_id,
            "reservation_converted_to_borrow",
            "Reservation Converted to Borrow",
            f'Your reservation for "{book_title}" has been converted to borrowed.',
            related_id=reservation_id,
            priority="high",
        )

    def reservation_cancelled(
        self, user_id: str, book_title: str, reservation_id: str
    ) -> None:
        self.notify(
            user_id,
            "reservation_cancelled",
            "Reservation Cancelled",
            f'Your reservation for "{book_title}" has been cancelled.',
            related_id=reservation_id,
            priority="high",
        )

    def borrow_due_tomorrow(
        self, user_id: str, book_title: str, borrow_id: str
    ) -> None:
        self.notify(
            user_id,
            "borrow_due_tomorrow",
            "Book Due Tomorrow",
            f'Your borrowed learning material "{book_title}" is due tomorrow. '
            "Please return it on time to avoid fines.",
            related_id=borrow_id,
            priority="high",
        )

    def settle_fines(
        self,
        user_id: str,
        book_title: str,
        borrow_id: str,
        days_overdue: int,
        amount_due: float,
    ) -> None:
        self.notify(
            user_id,
            "settle_fines",
            "Overdue Book",
            f'Your borrowed learning material "{book_title}" is {days_overdue} day(s) '
            f"overdue. Please settle your outstanding fines of {amount_due:.2f}.",
            related_id=borrow_id,
            priority="high",
        )


class ActivityLog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: List[ActivityEntry] = []

    def record(self, actor_id: str, action: str, details: str) -> None:
        with self._lock:
            self._entries.append(
                ActivityEntry(actor_id=actor_id, action=action, details=details)
            )

    def list_entries(self, actor_id: Optional[str] = None) -> List[ActivityEntry]:
        with self._lock:
            entries = list(self._entries)
        if actor_id is None:
            return entries
        return [e for e in entries if e.actor_id == actor_id]
