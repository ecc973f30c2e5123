# Alerts package for treasury notifications

from .dispatcher import ALERT_BOOKKEEPING_KEY, AlertDispatcher
from .formatting import REQUEST_CREATED, STATUS_CHANGED, build_alert_message, build_tx_link
from .telegram_notifier import TelegramNotifier
