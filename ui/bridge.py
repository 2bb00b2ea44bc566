"""Thread-safe adapter between the engine and Qt widgets.

Engine code runs on a thread-pool worker, but dialogs may only be shown on
the GUI thread. Confirmations are therefore marshalled with a blocking
queued connection; notices and progress use ordinary queued signals.
"""
from __future__ import annotations

from PySide6.QtCore import QObject, Qt, QThread, Signal, Slot
from PySide6.QtWidgets import QMessageBox, QWidget

from services.task_engine import NoticeLevel


class _Answer:
    __slots__ = ("value",)

    def __init__(self) -> None:
        self.value = False


class QtInterface(QObject):
    """Implements both the engine's user interface and progress observer contracts."""

    notice = Signal(str, str)
    status = Signal(str, str)
    progress = Signal(str, float)
    _confirm_requested = Signal(str, object)

    def __init__(self, parent_widget: QWidget | None = None) -> None:
        super().__init__()
        self._parent_widget = parent_widget
        self._confirm_requested.connect(self._ask, Qt.BlockingQueuedConnection)

    def attach(self, widget: QWidget) -> None:
        """Parent confirmation dialogs to ``widget``."""

        self._parent_widget = widget

    def confirm(self, prompt: str) -> bool:
        answer = _Answer()
        if QThread.currentThread() == self.thread():
            self._ask(prompt, answer)
        else:
            self._confirm_requested.emit(prompt, answer)
        return answer.value

    def notify(self, level: NoticeLevel, message: str) -> None:
        self.notice.emit(level.value, message)

    def on_status(self, activity: str, message: str) -> None:
        self.status.emit(activity, message)

    def on_progress(self, activity: str, percent: float) -> None:
        self.progress.emit(activity, percent)

    @Slot(str, object)
    def _ask(self, prompt: str, answer: _Answer) -> None:
        reply = QMessageBox.question(
            self._parent_widget,
            "Confirm",
            prompt,
            QMessageBox.Yes | QMessageBox.No,
            QMessageBox.No,
        )
        answer.value = reply == QMessageBox.Yes
