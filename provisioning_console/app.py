"""Application bootstrap for the PySide6 console."""
from __future__ import annotations

import logging
import sys

from pydantic import ValidationError
from PySide6.QtWidgets import QApplication, QMessageBox

from provisioning_console.catalog import load_catalog_directory
from provisioning_console.errors import CatalogError
from provisioning_console.logging_config import configure_logging
from provisioning_console.settings import get_settings
from services.reconciliation import Reconciler
from services.task_engine import create_default_context
from services.task_registry import TaskDispatcher, build_default_registry
from ui.bridge import QtInterface
from ui.main_window import MainWindow
from ui.theme import DARK_THEME, apply_theme

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    try:
        settings = get_settings()
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level, settings.log_file)

    app = QApplication(sys.argv if argv is None else argv)
    apply_theme(app, DARK_THEME)

    try:
        catalogs = load_catalog_directory(settings.catalog_dir)
    except CatalogError as exc:
        logger.error("Could not load catalogs: %s", exc)
        QMessageBox.critical(None, "Catalog error", str(exc))
        return 1
    logger.info("Loaded %d catalog(s) from %s", len(catalogs), settings.catalog_dir)

    interface = QtInterface()
    context = create_default_context(settings, ui=interface, observer=interface)
    reconciler = Reconciler(TaskDispatcher(build_default_registry(), context))
    window = MainWindow(catalogs, reconciler, interface, DARK_THEME)
    window.show()
    try:
        return app.exec()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0
