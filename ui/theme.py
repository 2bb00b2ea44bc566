"""Palette styling for the console window."""
from __future__ import annotations

from dataclasses import dataclass

from PySide6.QtGui import QColor, QPalette
from PySide6.QtWidgets import QApplication, QStyleFactory

from services.task_engine import TaskStatus


@dataclass(frozen=True)
class Theme:
    background: str = "#1e1e1e"
    surface: str = "#202020"
    base: str = "#121212"
    text: str = "#e6e6e6"
    accent: str = "#007acc"
    bright_text: str = "#ff4081"
    disabled_text: str = "#828282"
    applied: str = "#4caf50"
    pending: str = "#ffb300"
    error: str = "#f44336"
    neutral: str = "#9e9e9e"

    def status_color(self, status: TaskStatus) -> str:
        if status is TaskStatus.APPLIED:
            return self.applied
        if status is TaskStatus.APPLIED_NOT_REVERTIBLE:
            return self.accent
        if status is TaskStatus.PENDING:
            return self.pending
        if status in (TaskStatus.ERROR, TaskStatus.ENGINE_ERROR):
            return self.error
        return self.neutral


DARK_THEME = Theme()


def apply_theme(app: QApplication, theme: Theme = DARK_THEME) -> None:
    app.setStyle(QStyleFactory.create("Fusion"))

    text = QColor(theme.text)
    surface = QColor(theme.surface)
    disabled_text = QColor(theme.disabled_text)

    palette = QPalette()
    palette.setColor(QPalette.Window, QColor(theme.background))
    palette.setColor(QPalette.WindowText, text)
    palette.setColor(QPalette.Base, QColor(theme.base))
    palette.setColor(QPalette.AlternateBase, surface)
    palette.setColor(QPalette.ToolTipBase, surface)
    palette.setColor(QPalette.ToolTipText, text)
    palette.setColor(QPalette.Text, text)
    palette.setColor(QPalette.Button, surface)
    palette.setColor(QPalette.ButtonText, text)
    palette.setColor(QPalette.BrightText, QColor(theme.bright_text))
    palette.setColor(QPalette.Highlight, QColor(theme.accent))
    palette.setColor(QPalette.HighlightedText, QColor("#ffffff"))
    palette.setColor(QPalette.Disabled, QPalette.Text, disabled_text)
    palette.setColor(QPalette.Disabled, QPalette.ButtonText, disabled_text)
    palette.setColor(QPalette.Disabled, QPalette.WindowText, disabled_text)
    app.setPalette(palette)
