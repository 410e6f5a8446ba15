from __future__ import annotations

import datetime
import sys
from pathlib import Path

APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from PySide6.QtGui import QCloseEvent
from PySide6.QtWidgets import QApplication, QInputDialog, QMainWindow, QMessageBox

from actions import AsyncRotaClient, RotaActions
from database import init_database
from grid_controller import GridController
from permissions import RolePermissions, load_user_roles
from ui.rota_grid import RotaGridPage

THEME_STYLESHEET = """
QWidget { font-size: 12px; }
QListWidget { border: 1px solid #d1d5db; border-radius: 4px; }
QPushButton { padding: 4px 10px; }
"""


class MainWindow(QMainWindow):
    def __init__(self, user_id: str) -> None:
        super().__init__()
        self.user_id = user_id
        permissions = RolePermissions()
        role = permissions.role_for(user_id) or "no role"
        self.setWindowTitle(f"Rota - {user_id} ({role})")
        client = AsyncRotaClient(RotaActions(user_id, permissions=permissions))
        self.controller = GridController(client, datetime.date.today())
        self.page = RotaGridPage(self.controller, user=user_id)
        self.setCentralWidget(self.page)
        self.resize(1280, 820)

    def closeEvent(self, event: QCloseEvent) -> None:
        if self.controller.busy:
            QMessageBox.information(self, "Saving", "A change is still being saved.")
            event.ignore()
            return
        event.accept()


def launch_app() -> int:
    app = QApplication(sys.argv)
    app.setStyleSheet(THEME_STYLESHEET)
    init_database()

    users = sorted(load_user_roles())
    user_id, ok = QInputDialog.getItem(None, "Sign in", "User", users, 0, True)
    if not ok or not user_id.strip():
        return 0
    window = MainWindow(user_id.strip())
    window.show()
    return app.exec()


if __name__ == "__main__":
    sys.exit(launch_app())
