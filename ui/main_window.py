"""Main window hosting one tab per catalog and the shared activity log."""
from __future__ import annotations

from typing import Mapping

from PySide6.QtCore import Qt, QThreadPool
from PySide6.QtWidgets import (
    QLabel,
    QMainWindow,
    QPlainTextEdit,
    QProgressBar,
    QSplitter,
    QTabWidget,
    QVBoxLayout,
    QWidget,
)

from provisioning_console.catalog import Catalog
from services.reconciliation import Reconciler
from services.task_engine import NoticeLevel
from ui.bridge import QtInterface
from ui.catalog_tab import CatalogTab
from ui.theme import Theme

class MainWindow(QMainWindow):
    def __init__(
        self,
        catalogs: Mapping[str, Catalog],
        reconciler: Reconciler,
        interface: QtInterface,
        theme: Theme,
    ) -> None:
        super().__init__()
        self.setWindowTitle("Provisioning Console")
        self.resize(1100, 760)
        self._theme = theme
        # Handlers share one context, so actions run strictly one at a time.
        self._thread_pool = QThreadPool(self)
        self._thread_pool.setMaxThreadCount(1)

        interface.attach(self)
        interface.notice.connect(self._handle_notice)
        interface.status.connect(self._handle_status)
        interface.progress.connect(self._handle_progress)

        central = QWidget()
        layout = QVBoxLayout(central)
        splitter = QSplitter(Qt.Vertical)
        self._tabs = QTabWidget()
        self.tabs: list[CatalogTab] = []
        for name, catalog in catalogs.items():
            tab = CatalogTab(catalog, reconciler, self.log, self._thread_pool, theme)
            self._tabs.addTab(tab, name.capitalize())
            self.tabs.append(tab)
        if not catalogs:
            self._tabs.addTab(QLabel("No catalogs found."), "Catalogs")
        splitter.addWidget(self._tabs)

        self._log_view = QPlainTextEdit()
        self._log_view.setReadOnly(True)
        self._log_view.setMaximumBlockCount(5000)
        splitter.addWidget(self._log_view)
        splitter.setStretchFactor(0, 3)
        splitter.setStretchFactor(1, 1)
        layout.addWidget(splitter)

        self._progress = QProgressBar()
        self._progress.setRange(0, 100)
        self._progress.setVisible(False)
        self._activity = QLabel("")
        self.statusBar().addWidget(self._activity, 1)
        self.statusBar().addPermanentWidget(self._progress)
        self.setCentralWidget(central)

        for tab in self.tabs:
            tab.refresh()

    def log(self, message: str) -> None:
        self._log_view.appendPlainText(message)

    def _handle_notice(self, level: str, message: str) -> None:
        prefix = "" if level == NoticeLevel.INFO.value else f"[{level.upper()}] "
        self.log(f"{prefix}{message}")

    def _handle_status(self, activity: str, message: str) -> None:
        self._activity.setText(f"{activity}: {message}")
        if message != "started":
            self._progress.setVisible(False)

    def _handle_progress(self, activity: str, percent: float) -> None:
        self._activity.setText(activity)
        self._progress.setVisible(True)
        self._progress.setValue(int(max(0.0, min(percent, 100.0))))
