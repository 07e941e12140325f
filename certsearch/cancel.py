from __future__ import annotations

import logging
import signal
import threading
from typing import Protocol

logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = ("SIGHUP", "SIGINT", "SIGTERM")


class Waiter(Protocol):
    """Ожидание «таймер или отмена, что наступит раньше»."""

    def wait(self, timeout_s: float) -> bool:
        """Возвращает True, если ожидание прервано отменой."""


class CancelToken:
    """
    Кооперативная отмена на базе threading.Event.

    Цикл сканирования проверяет отмену только в точке ожидания между итерациями,
    запрос, который уже выполняется, дорабатывает до конца.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout_s: float) -> bool:
        # Event.wait(0) тоже возвращает текущее состояние, так что отмена видна и без паузы.
        return self._event.wait(max(0.0, timeout_s))


def install_signal_handlers(token: CancelToken) -> list[str]:
    """Переводит SIGHUP/SIGINT/SIGTERM в отмену токена. Возвращает список установленных сигналов."""

    def handle_signal(signum, _frame) -> None:
        logger.info("Received signal %s, stopping after the current step", signal.Signals(signum).name)
        token.cancel()

    installed = []
    for name in _SHUTDOWN_SIGNALS:
        # SIGHUP есть не на всех платформах.
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        signal.signal(signum, handle_signal)
        installed.append(name)
    logger.debug("Signal handlers installed: %s", ", ".join(installed))
    return installed
