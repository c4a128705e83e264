"""In-app notification service for order and payment events"""
import logging

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Fire-and-forget notification sink.

    Each notification is committed on its own so that a failing insert can
    never take a settlement or any other caller's work down with it.
    """

    def __init__(self, db, Notification):
        self.db = db
        self.Notification = Notification

    def notify(self, user_id, notification_type, title, message, order_id=None):
        """
        Create a notification for a user

        Args:
            user_id: Recipient user ID (None is ignored)
            notification_type: order_completed, manager_payout, payment_confirmed, payment_failed
            title: Short title
            message: Notification body
            order_id: Related order, if any

        Returns:
            bool: True if the notification was stored
        """
        if not user_id:
            return False

        try:
            notification = self.Notification(
                user_id=user_id,
                order_id=order_id,
                notification_type=notification_type,
                title=title,
                message=message
            )
            self.db.session.add(notification)
            self.db.session.commit()
            return True
        except Exception as e:
            self.db.session.rollback()
            logger.error(f"Failed to create {notification_type} notification for user {user_id}: {str(e)}")
            return False
