from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from PySide6.QtCore import QMimeData, Qt
from PySide6.QtGui import QColor, QDrag
from PySide6.QtWidgets import (
    QAbstractItemView,
    QFrame,
    QGridLayout,
    QGroupBox,
    QHBoxLayout,
    QLabel,
    QListWidget,
    QListWidgetItem,
    QProgressBar,
    QPushButton,
    QScrollArea,
    QToolButton,
    QVBoxLayout,
    QWidget,
)

from assignment import OPEN, CellRef, assignment_for
from departments import colour_for_department
from grid_controller import GridController
from hours import shift_paid_hours
from ui.edit_shift import EditShiftDialog

SHIFT_MIME = "application/x-rota-shift"
DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
BAND_COLOURS = {"normal": "#22c55e", "warning": "#f59e0b", "over": "#ef4444", "none": "#9ca3af"}
TOAST_COLOURS = {"success": "#16a34a", "info": "#2563eb", "warning": "#d97706", "error": "#dc2626"}


def run_async(coro):
    return asyncio.run(coro)


class ShiftCell(QListWidget):
    """One employee/day cell. Items carry shift ids; drops resolve to this cell's id."""

    def __init__(self, page: "RotaGridPage", cell: CellRef) -> None:
        super().__init__()
        self.page = page
        self.cell = cell
        self.cell_id = cell.encode()
        self.setAcceptDrops(True)
        self.setDragEnabled(True)
        self.setDragDropMode(QAbstractItemView.DragDrop)
        self.setSelectionMode(QAbstractItemView.SingleSelection)
        self.setMinimumHeight(56)
        self.itemDoubleClicked.connect(self._open_item)

    def startDrag(self, supported_actions) -> None:
        item = self.currentItem()
        if item is None:
            return
        shift_id = item.data(Qt.UserRole)
        if not self.page.controller.start_drag(shift_id):
            return
        mime = QMimeData()
        mime.setData(SHIFT_MIME, str(shift_id).encode("utf-8"))
        drag = QDrag(self)
        drag.setMimeData(mime)
        drag.exec(Qt.MoveAction)
        if self.page.controller.drag.phase != "idle":
            self.page.controller.cancel_drag()

    def dragEnterEvent(self, event) -> None:
        if event.mimeData().hasFormat(SHIFT_MIME) and not self.page.controller.busy:
            event.acceptProposedAction()
        else:
            event.ignore()

    def dragMoveEvent(self, event) -> None:
        self.dragEnterEvent(event)

    def dropEvent(self, event) -> None:
        if not event.mimeData().hasFormat(SHIFT_MIME):
            event.ignore()
            return
        event.setDropAction(Qt.MoveAction)
        event.accept()
        # The grid repaints from controller state; Qt must not move the item itself.
        self.page.handle_drop(self.cell_id)

    def _open_item(self, item: QListWidgetItem) -> None:
        self.page.open_shift(item.data(Qt.UserRole))


class RotaGridPage(QWidget):
    def __init__(self, controller: GridController, *, user: Optional[str] = None) -> None:
        super().__init__()
        self.controller = controller
        self.user = user
        self.cells: Dict[str, ShiftCell] = {}
        self._build_ui()
        self.controller.subscribe(self.render)
        self.reload()

    # -- layout -----------------------------------------------------------

    def _build_ui(self) -> None:
        layout = QVBoxLayout(self)
        layout.setSpacing(10)

        header = QHBoxLayout()
        self.prev_week_button = QPushButton("◀")
        self.prev_week_button.setFixedSize(30, 30)
        self.prev_week_button.clicked.connect(lambda: self._navigate(-1))
        header.addWidget(self.prev_week_button)
        self.week_label = QLabel("Week of --")
        header.addWidget(self.week_label)
        self.next_week_button = QPushButton("▶")
        self.next_week_button.setFixedSize(30, 30)
        self.next_week_button.clicked.connect(lambda: self._navigate(1))
        header.addWidget(self.next_week_button)
        header.addStretch()
        self.auto_button = QPushButton("Auto-populate")
        self.auto_button.setToolTip("Add this week's shifts from day-of-week templates. Existing ones are skipped.")
        self.auto_button.clicked.connect(self._handle_auto_populate)
        header.addWidget(self.auto_button)
        self.publish_button = QPushButton("Publish")
        self.publish_button.clicked.connect(self._handle_publish)
        header.addWidget(self.publish_button)
        layout.addLayout(header)

        self.banner_label = QLabel()
        self.banner_label.setWordWrap(True)
        self.banner_label.setStyleSheet("background:#fef3c7; color:#92400e; padding:6px; border-radius:4px;")
        layout.addWidget(self.banner_label)

        self.grid_host = QWidget()
        self.grid_layout = QGridLayout(self.grid_host)
        self.grid_layout.setSpacing(4)
        scroll = QScrollArea()
        scroll.setWidgetResizable(True)
        scroll.setWidget(self.grid_host)
        layout.addWidget(scroll, 1)

        self.budget_box = QGroupBox("Department hours vs budget")
        self.budget_layout = QVBoxLayout(self.budget_box)
        layout.addWidget(self.budget_box)

        self.toast_label = QLabel()
        self.toast_label.setWordWrap(True)
        layout.addWidget(self.toast_label)

    # -- controller bridge ------------------------------------------------

    def reload(self) -> None:
        run_async(self.controller.load())

    def _navigate(self, weeks: int) -> None:
        run_async(self.controller.navigate(weeks))

    def handle_drop(self, cell_id: str) -> None:
        run_async(self.controller.drop(cell_id))

    def _handle_auto_populate(self) -> None:
        run_async(self.controller.auto_populate())

    def _handle_publish(self) -> None:
        run_async(self.controller.publish())

    def open_shift(self, shift_id: int) -> None:
        shift = self.controller.shifts.get(shift_id)
        if shift is None or not self.controller.can_edit:
            return
        dialog = EditShiftDialog(
            employees=self.controller.employees,
            departments=self.controller.view.departments if self.controller.view else [],
            week_start=self.controller.week_start,
            shift=shift,
            on_save=lambda patch: run_async(self.controller.edit_shift(shift_id, patch)),
            on_delete=lambda sid: run_async(self.controller.delete_shift(sid)),
            on_sick=lambda sid: run_async(self.controller.mark_sick(sid)),
            parent=self,
        )
        dialog.exec()

    def add_shift(self, cell_id: str) -> None:
        seed = self.controller.new_shift_seed(cell_id)
        if seed is None or not self.controller.can_edit:
            return
        dialog = EditShiftDialog(
            employees=self.controller.employees,
            departments=self.controller.view.departments if self.controller.view else [],
            week_start=self.controller.week_start,
            seed=seed,
            on_save=lambda payload: run_async(self.controller.add_shift(payload)),
            parent=self,
        )
        dialog.exec()

    # -- rendering --------------------------------------------------------

    def render(self) -> None:
        controller = self.controller
        week = controller.week or {}
        self.week_label.setText(week.get("label") or f"Week of {controller.week_start.isoformat()}")
        banner = controller.banner
        self.banner_label.setVisible(bool(banner))
        self.banner_label.setText(banner or "")
        idle = not controller.busy
        self.auto_button.setEnabled(idle and controller.can_edit and bool(week))
        self.publish_button.setEnabled(idle and controller.can_publish and bool(week))
        self.prev_week_button.setEnabled(idle)
        self.next_week_button.setEnabled(idle)
        self._render_grid()
        self._render_budget()
        self._render_toasts()

    def _clear_grid(self) -> None:
        while self.grid_layout.count():
            item = self.grid_layout.takeAt(0)
            widget = item.widget()
            if widget is not None:
                widget.deleteLater()
        self.cells = {}

    def _render_grid(self) -> None:
        self._clear_grid()
        controller = self.controller
        dates = controller.dates
        view = controller.view
        day_info = {entry["date"]: entry["info"] for entry in view.days} if view else {}
        for column, day in enumerate(dates, start=1):
            info = day_info.get(day.isoformat()) or {}
            lines = [f"{DAY_NAMES[day.weekday()]} {day.strftime('%d %b')}"]
            if info.get("events"):
                lines.append(", ".join(event.get("name", "Event") for event in info["events"]))
            if info.get("private_bookings"):
                lines.append(f"{len(info['private_bookings'])} private booking(s)")
            if info.get("table_covers"):
                lines.append(f"{info['table_covers']} covers")
            lines.extend(info.get("calendar_notes") or [])
            label = QLabel("\n".join(lines))
            label.setAlignment(Qt.AlignCenter)
            self.grid_layout.addWidget(label, 0, column)

        hours = {row["employee_id"]: row for row in controller.employee_hours()}
        rows: List[tuple] = [(OPEN, "Open shifts", None)]
        for employee in controller.employees:
            rows.append((assignment_for(employee["employee_id"]), employee["name"], employee))
        for row_index, (assignment, name, employee) in enumerate(rows, start=1):
            row_label = QLabel(name)
            if employee is not None:
                summary = hours.get(employee["employee_id"], {})
                cap = summary.get("max_weekly_hours")
                cap_text = f" / {cap:g}" if cap is not None else ""
                row_label.setText(f"{name}\n{summary.get('hours', 0):.2f}h{cap_text}")
                if summary.get("over_cap"):
                    row_label.setStyleSheet("color:#dc2626;")
                elif not employee.get("is_active", True):
                    row_label.setStyleSheet("color:#6b7280; font-style:italic;")
            self.grid_layout.addWidget(row_label, row_index, 0)
            for column, day in enumerate(dates, start=1):
                self.grid_layout.addWidget(self._build_cell(CellRef(assignment, day)), row_index, column)

    def _build_cell(self, cell: CellRef) -> QWidget:
        frame = QFrame()
        frame_layout = QVBoxLayout(frame)
        frame_layout.setContentsMargins(2, 2, 2, 2)
        frame_layout.setSpacing(2)
        cell_list = ShiftCell(self, cell)
        employee_id = cell.assignment.employee_id
        if self.controller.approved_leave(employee_id, cell.date):
            cell_list.setStyleSheet("background:#fee2e2;")
            cell_list.setToolTip("Approved leave")
        for shift in self.controller.shifts_in_cell(cell):
            item = QListWidgetItem(self._format_shift_text(shift))
            item.setData(Qt.UserRole, shift["id"])
            item.setBackground(QColor(colour_for_department(shift.get("department"))))
            item.setForeground(QColor(Qt.white))
            if shift.get("status") != "scheduled":
                item.setToolTip(shift["status"].title())
            cell_list.addItem(item)
        cell_list.setEnabled(not self.controller.busy)
        self.cells[cell.encode()] = cell_list
        frame_layout.addWidget(cell_list)
        if self.controller.can_edit:
            add_button = QToolButton()
            add_button.setText("+")
            add_button.setEnabled(not self.controller.busy)
            add_button.clicked.connect(lambda _=False, cell_id=cell.encode(): self.add_shift(cell_id))
            frame_layout.addWidget(add_button, 0, Qt.AlignRight)
        return frame

    @staticmethod
    def _format_shift_text(shift: Dict) -> str:
        label = shift.get("name") or (shift.get("department") or "").title()
        status = f" [{shift['status']}]" if shift.get("status") != "scheduled" else ""
        overnight = " +1" if shift.get("is_overnight") else ""
        return (
            f"{shift['start_time']}-{shift['end_time']}{overnight}{status}\n"
            f"{label} - {shift_paid_hours(shift):.2f}h"
        )

    def _render_budget(self) -> None:
        while self.budget_layout.count():
            item = self.budget_layout.takeAt(0)
            if item.widget() is not None:
                item.widget().deleteLater()
        for row in self.controller.budget_rows():
            bar = QProgressBar()
            bar.setRange(0, 100)
            percent = row["percent"]
            bar.setValue(int(min(100, percent)) if percent is not None else 0)
            target = row["weekly_target_hours"]
            target_text = f"{target:.1f}h" if target is not None else "no budget"
            bar.setFormat(f"{row['label']}: {row['scheduled_hours']:.1f}h / {target_text}")
            bar.setStyleSheet(f"QProgressBar::chunk {{ background: {BAND_COLOURS[row['band']]}; }}")
            self.budget_layout.addWidget(bar)

    def _render_toasts(self) -> None:
        toasts = self.controller.drain_toasts()
        if not toasts:
            return
        latest = toasts[-1]
        messages = " | ".join(toast.message for toast in toasts)
        self.toast_label.setStyleSheet(f"color:{TOAST_COLOURS.get(latest.level, '#111827')};")
        self.toast_label.setText(messages)
