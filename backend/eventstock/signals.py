"""
Stock change notifications.

Pool mutations announce themselves through the ``stock_changed`` signal once
the unit of work has committed. Subscribers (cache refreshers, reporting) use
``stock_changed.connect``. Delivery is best-effort: a failing subscriber is
logged and never undoes the committed change.
"""

from __future__ import annotations

from typing import Iterable

from blinker import Namespace
from flask import current_app

_signals = Namespace()

stock_changed = _signals.signal("stock-changed")


def notify_stock_changed(product_ids: Iterable[int], *, reason: str, **extra) -> None:
    ids = sorted({int(pid) for pid in product_ids if pid is not None})
    if not ids:
        return
    for receiver in stock_changed.receivers_for(current_app._get_current_object()):
        try:
            receiver(current_app._get_current_object(), product_ids=ids, reason=reason, **extra)
        except Exception:
            current_app.logger.exception("stock_changed subscriber failed (reason=%s)", reason)


def log_stock_change(sender, product_ids=None, reason=None, **extra) -> None:
    sender.logger.debug("Stock changed for products %s (%s)", product_ids, reason)
