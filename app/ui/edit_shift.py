from __future__ import annotations

import datetime
from typing import Callable, Dict, List, Optional

from PySide6.QtCore import Qt, QDate, QTime
from PySide6.QtGui import QColor
from PySide6.QtWidgets import (
    QCheckBox,
    QComboBox,
    QDateEdit,
    QDialog,
    QDialogButtonBox,
    QFormLayout,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QMessageBox,
    QPlainTextEdit,
    QPushButton,
    QSpinBox,
    QTimeEdit,
    QVBoxLayout,
)

from hours import crosses_midnight, format_hhmm, paid_hours


class EditShiftDialog(QDialog):
    """Add or edit one shift.

    When editing, the employee and date are shown read-only: placement
    changes go through drag and drop.
    """

    def __init__(
        self,
        *,
        employees: List[Dict],
        departments: List[Dict],
        week_start: datetime.date,
        seed: Optional[Dict] = None,
        shift: Optional[Dict] = None,
        on_save: Optional[Callable[[Dict], None]] = None,
        on_delete: Optional[Callable[[int], None]] = None,
        on_sick: Optional[Callable[[int], None]] = None,
        parent=None,
    ) -> None:
        super().__init__(parent)
        self.setModal(True)
        self.employees = employees
        self.departments = departments
        self.week_start = week_start
        self.shift = shift
        self.on_save = on_save
        self.on_delete = on_delete
        self.on_sick = on_sick
        self.setWindowTitle("Edit shift" if shift else "Add shift")
        self._build_ui()
        self._load(shift or seed or {})

    def _build_ui(self) -> None:
        layout = QVBoxLayout(self)
        self.feedback_label = QLabel()
        self.feedback_label.setStyleSheet("color:#ff7a7a;")

        form = QFormLayout()

        self.employee_combo = QComboBox()
        self.employee_combo.addItem("Open shift", None)
        for employee in self.employees:
            label = employee["name"] if employee.get("is_active", True) else f"{employee['name']} (former)"
            self.employee_combo.addItem(label, employee["employee_id"])
        self.employee_combo.setEnabled(self.shift is None)
        form.addRow("Employee", self.employee_combo)

        self.date_edit = QDateEdit()
        self.date_edit.setCalendarPopup(True)
        self.date_edit.setDisplayFormat("yyyy-MM-dd")
        week_end = self.week_start + datetime.timedelta(days=6)
        self.date_edit.setMinimumDate(QDate(self.week_start.year, self.week_start.month, self.week_start.day))
        self.date_edit.setMaximumDate(QDate(week_end.year, week_end.month, week_end.day))
        self.date_edit.setEnabled(self.shift is None)
        form.addRow("Date", self.date_edit)

        self.department_combo = QComboBox()
        for department in self.departments:
            index = self.department_combo.count()
            self.department_combo.addItem(department.get("label") or department["name"], department["name"])
            self.department_combo.setItemData(index, QColor(department.get("colour") or "#9ca3af"), Qt.BackgroundRole)
            self.department_combo.setItemData(index, QColor(Qt.white), Qt.ForegroundRole)
        form.addRow("Department", self.department_combo)

        time_row = QHBoxLayout()
        self.start_time = QTimeEdit()
        self.start_time.setDisplayFormat("HH:mm")
        time_row.addWidget(self.start_time)
        self.end_time = QTimeEdit()
        self.end_time.setDisplayFormat("HH:mm")
        time_row.addWidget(self.end_time)
        self.overnight_check = QCheckBox("Ends next day")
        time_row.addWidget(self.overnight_check)
        form.addRow("Time", time_row)

        self.break_spin = QSpinBox()
        self.break_spin.setRange(0, 600)
        self.break_spin.setSingleStep(15)
        self.break_spin.setSuffix(" min")
        form.addRow("Unpaid break", self.break_spin)

        self.hours_label = QLabel("0.00 h")
        form.addRow("Paid hours", self.hours_label)

        self.name_input = QLineEdit()
        self.name_input.setPlaceholderText("Optional label, e.g. Close")
        form.addRow("Label", self.name_input)

        self.notes_input = QPlainTextEdit()
        self.notes_input.setPlaceholderText("Optional notes visible in the grid.")
        form.addRow("Notes", self.notes_input)

        layout.addLayout(form)
        layout.addWidget(self.feedback_label)

        for widget in (self.start_time, self.end_time):
            widget.timeChanged.connect(self._update_hours)
        self.break_spin.valueChanged.connect(self._update_hours)
        self.overnight_check.toggled.connect(self._update_hours)

        button_box = QDialogButtonBox(QDialogButtonBox.Save | QDialogButtonBox.Cancel)
        button_box.accepted.connect(self._handle_save)
        button_box.rejected.connect(self.reject)

        self.sick_button = QPushButton("Mark sick")
        self.sick_button.setVisible(self.shift is not None and self.shift.get("status") == "scheduled")
        self.sick_button.clicked.connect(self._handle_sick)

        self.delete_button = QPushButton("Delete")
        self.delete_button.setVisible(self.shift is not None)
        self.delete_button.clicked.connect(self._handle_delete)

        action_row = QHBoxLayout()
        action_row.addWidget(button_box)
        action_row.addWidget(self.sick_button)
        action_row.addWidget(self.delete_button)
        action_row.addStretch()
        layout.addLayout(action_row)

    def _load(self, data: Dict) -> None:
        index = self.employee_combo.findData(data.get("employee_id"))
        self.employee_combo.setCurrentIndex(max(index, 0))
        raw_date = data.get("shift_date")
        day = datetime.date.fromisoformat(raw_date) if raw_date else self.week_start
        self.date_edit.setDate(QDate(day.year, day.month, day.day))
        dept_index = self.department_combo.findData(data.get("department"))
        if dept_index >= 0:
            self.department_combo.setCurrentIndex(dept_index)
        start = datetime.time.fromisoformat(data.get("start_time") or "09:00")
        end = datetime.time.fromisoformat(data.get("end_time") or "17:00")
        self.start_time.setTime(QTime(start.hour, start.minute))
        self.end_time.setTime(QTime(end.hour, end.minute))
        self.overnight_check.setChecked(bool(data.get("is_overnight")))
        self.break_spin.setValue(int(data.get("unpaid_break_minutes") or 0))
        self.name_input.setText(data.get("name") or "")
        self.notes_input.setPlainText(data.get("notes") or "")
        self._update_hours()

    def _times(self):
        start = self.start_time.time()
        end = self.end_time.time()
        return datetime.time(start.hour(), start.minute()), datetime.time(end.hour(), end.minute())

    def _update_hours(self) -> None:
        start, end = self._times()
        overnight = self.overnight_check.isChecked()
        hours = paid_hours(start, end, self.break_spin.value(), overnight)
        suffix = " (ends next day)" if crosses_midnight(start, end, overnight) else ""
        self.hours_label.setText(f"{hours:.2f} h{suffix}")

    def _handle_save(self) -> None:
        department = self.department_combo.currentData()
        if not department:
            self.feedback_label.setText("Select a department for this shift.")
            return
        start, end = self._times()
        payload = {
            "start_time": format_hhmm(start),
            "end_time": format_hhmm(end),
            "unpaid_break_minutes": self.break_spin.value(),
            "is_overnight": self.overnight_check.isChecked(),
            "department": department,
            "name": self.name_input.text().strip(),
            "notes": self.notes_input.toPlainText().strip(),
        }
        if self.shift is None:
            qdate = self.date_edit.date()
            payload["employee_id"] = self.employee_combo.currentData()
            payload["shift_date"] = datetime.date(qdate.year(), qdate.month(), qdate.day()).isoformat()
        if self.on_save:
            self.on_save(payload)
        self.accept()

    def _handle_sick(self) -> None:
        if not self.shift or not self.on_sick:
            return
        self.on_sick(self.shift["id"])
        self.accept()

    def _handle_delete(self) -> None:
        if not self.shift or not self.on_delete:
            return
        confirm = QMessageBox.question(
            self,
            "Delete shift",
            "Remove this shift? This cannot be undone. Use Mark sick to keep it on record.",
        )
        if confirm != QMessageBox.Yes:
            return
        self.on_delete(self.shift["id"])
        self.accept()
