"""Catalog tab: live status table plus single and bulk actions."""
from __future__ import annotations

from typing import Callable, Dict

from PySide6.QtCore import Qt, QThreadPool
from PySide6.QtGui import QColor
from PySide6.QtWidgets import (
    QAbstractItemView,
    QHBoxLayout,
    QHeaderView,
    QLabel,
    QMessageBox,
    QPushButton,
    QTableWidget,
    QTableWidgetItem,
    QVBoxLayout,
    QWidget,
)

from provisioning_console.catalog import Catalog, CatalogFlavor, TaskDefinition
from services.reconciliation import Reconciler, TaskState
from ui.theme import Theme
from ui.workers import ServiceWorker

LogCallback = Callable[[str], None]

COLUMNS = ("ID", "Description", "Type", "Status", "Detail")


class CatalogTab(QWidget):
    def __init__(
        self,
        catalog: Catalog,
        reconciler: Reconciler,
        log_callback: LogCallback,
        thread_pool: QThreadPool,
        theme: Theme,
    ) -> None:
        super().__init__()
        self._catalog = catalog
        self._reconciler = reconciler
        self._log = log_callback
        self._thread_pool = thread_pool
        self._theme = theme
        self._states: Dict[str, TaskState] = {}
        self._workers: set[ServiceWorker] = set()
        self._busy = False
        self._build_ui()
        for violation in catalog.violations:
            self._log(f"[{catalog.name}] skipped invalid entry: {violation}")

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    def _track_worker(self, worker: ServiceWorker) -> None:
        self._workers.add(worker)
        worker.signals.finished.connect(lambda *_: self._workers.discard(worker))
        worker.signals.error.connect(lambda *_: self._workers.discard(worker))

    def _build_ui(self) -> None:
        layout = QVBoxLayout(self)
        layout.addWidget(QLabel(f"{len(self._catalog)} task(s) from {self._catalog.path}"))

        self._table = QTableWidget(len(self._catalog.tasks), len(COLUMNS))
        self._table.setHorizontalHeaderLabels(list(COLUMNS))
        self._table.setSelectionBehavior(QAbstractItemView.SelectRows)
        self._table.setSelectionMode(QAbstractItemView.ExtendedSelection)
        self._table.setEditTriggers(QAbstractItemView.NoEditTriggers)
        self._table.verticalHeader().setVisible(False)
        header = self._table.horizontalHeader()
        header.setSectionResizeMode(QHeaderView.ResizeToContents)
        header.setSectionResizeMode(1, QHeaderView.Stretch)
        for row, task in enumerate(self._catalog.tasks):
            id_item = QTableWidgetItem(task.id)
            id_item.setData(Qt.UserRole, task.id)
            self._table.setItem(row, 0, id_item)
            self._table.setItem(row, 1, QTableWidgetItem(task.description))
            self._table.setItem(row, 2, QTableWidgetItem(task.type))
            self._table.setItem(row, 3, QTableWidgetItem("Checking..."))
            self._table.setItem(row, 4, QTableWidgetItem(""))
        layout.addWidget(self._table)

        button_row = QHBoxLayout()
        self._buttons: list[QPushButton] = []
        self._add_button(button_row, "Refresh", self.refresh)
        self._add_button(button_row, "Apply Selected", self._start_apply_selected)
        self._add_button(button_row, "Revert Selected", self._start_revert_selected)
        if self._catalog.flavor is CatalogFlavor.PACKAGES:
            self._add_button(button_row, "Upgrade Selected", self._start_upgrade_selected)
        self._add_button(button_row, "Apply All Pending", self._start_apply_all)
        self._add_button(button_row, "Revert All Applied", self._start_revert_all)
        layout.addLayout(button_row)

    def _add_button(self, row: QHBoxLayout, caption: str, slot: Callable[[], None]) -> None:
        button = QPushButton(caption)
        button.clicked.connect(slot)
        row.addWidget(button)
        self._buttons.append(button)

    def refresh(self) -> None:
        if self._busy:
            return
        for row in range(self._table.rowCount()):
            self._table.item(row, 3).setText("Checking...")
        self._run(lambda: None, announce=None)

    def _start_apply_selected(self) -> None:
        tasks = self._selected_tasks()
        if tasks is None:
            return

        def apply_selected() -> None:
            for task in tasks:
                self._reconciler.apply_task(task)

        self._run(apply_selected, announce=f"Applying {len(tasks)} selected task(s)")

    def _start_revert_selected(self) -> None:
        tasks = self._selected_tasks()
        if tasks is None:
            return
        states = {task.id: self._states.get(task.id) for task in tasks}

        def revert_selected() -> None:
            for task in tasks:
                self._reconciler.revert_task(task, states[task.id])

        self._run(revert_selected, announce=f"Reverting {len(tasks)} selected task(s)")

    def _start_upgrade_selected(self) -> None:
        tasks = self._selected_tasks()
        if tasks is None:
            return

        def upgrade_selected() -> None:
            for task in tasks:
                self._reconciler.upgrade_task(task)

        self._run(upgrade_selected, announce=f"Upgrading {len(tasks)} selected package(s)")

    def _start_apply_all(self) -> None:
        if not self._ensure_idle():
            return
        pending = sum(1 for state in self._states.values() if state.can_apply)
        reply = QMessageBox.question(
            self,
            "Apply All Pending",
            f"Apply {pending} pending task(s) from '{self._catalog.name}' in catalog order?",
            QMessageBox.Yes | QMessageBox.No,
            QMessageBox.No,
        )
        if reply != QMessageBox.Yes:
            return
        tasks = list(self._catalog.tasks)
        self._run(lambda: self._reconciler.apply_all_pending(tasks), announce="Applying all pending tasks")

    def _start_revert_all(self) -> None:
        tasks = list(self._catalog.tasks)
        self._run(lambda: self._reconciler.revert_all_applied(tasks), announce="Reverting all applied tasks")

    def _selected_tasks(self) -> list[TaskDefinition] | None:
        if not self._ensure_idle():
            return None
        rows = sorted({index.row() for index in self._table.selectionModel().selectedRows()})
        if not rows:
            QMessageBox.information(self, "No Selection", "Select at least one task.")
            return None
        return [self._catalog.tasks[row] for row in rows]

    def _ensure_idle(self) -> bool:
        if self._busy:
            QMessageBox.information(self, "In Progress", "Please wait for current operation to finish.")
            return False
        return True

    def _run(self, action: Callable[[], object], *, announce: str | None) -> None:
        if self._busy:
            return
        self._busy = True
        self._set_controls_enabled(False)
        if announce:
            self._log(announce)
        tasks = list(self._catalog.tasks)

        def run_then_reconcile() -> list[TaskState]:
            action()
            return self._reconciler.reconcile(tasks)

        worker = ServiceWorker(run_then_reconcile)
        worker.signals.finished.connect(self._handle_states)
        worker.signals.error.connect(self._handle_error)
        self._track_worker(worker)
        self._thread_pool.start(worker)

    def _handle_states(self, states: list[TaskState]) -> None:
        self._states = {state.task.id: state for state in states}
        for row, task in enumerate(self._catalog.tasks):
            state = self._states.get(task.id)
            if state is None:
                continue
            status_item = self._table.item(row, 3)
            status_item.setText(state.status.value)
            status_item.setForeground(QColor(self._theme.status_color(state.status)))
            self._table.item(row, 4).setText(state.detail)
        counts: Dict[str, int] = {}
        for state in states:
            counts[state.status.value] = counts.get(state.status.value, 0) + 1
        summary = ", ".join(f"{count} {status}" for status, count in sorted(counts.items()))
        self._log(f"[{self._catalog.name}] {summary or 'no tasks'}")
        self._busy = False
        self._set_controls_enabled(True)

    def _set_controls_enabled(self, enabled: bool) -> None:
        for button in self._buttons:
            button.setEnabled(enabled)
        self._table.setEnabled(enabled)

    def _handle_error(self, message: str) -> None:
        self._log(f"[ERROR] {message}")
        self._busy = False
        self._set_controls_enabled(True)
