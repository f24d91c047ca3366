from __future__ import annotations

from PySide6 import QtCore, QtWidgets


class LogPanel(QtWidgets.QPlainTextEdit):
	def __init__(self, parent=None):
		super().__init__(parent)
		self.setReadOnly(True)
		self.setMaximumBlockCount(2000)

	@QtCore.Slot(str)
	def append_log(self, message: str) -> None:
		self.appendPlainText(message)


class CallStatusCard(QtWidgets.QFrame):
	def __init__(self, parent=None):
		super().__init__(parent)
		self.setFrameShape(QtWidgets.QFrame.Shape.StyledPanel)
		self.setFrameShadow(QtWidgets.QFrame.Shadow.Raised)

		self._relay = QtWidgets.QLabel("Disconnected")
		self._call = QtWidgets.QLabel("Idle")
		self._duration = QtWidgets.QLabel("00:00")
		self._media = QtWidgets.QLabel("-")

		layout = QtWidgets.QVBoxLayout(self)
		layout.setContentsMargins(10, 10, 10, 10)
		layout.setSpacing(6)

		header = QtWidgets.QLabel("Call")
		font = header.font()
		font.setBold(True)
		header.setFont(font)
		layout.addWidget(header)

		form = QtWidgets.QFormLayout()
		form.setContentsMargins(0, 0, 0, 0)
		form.setHorizontalSpacing(12)
		form.setVerticalSpacing(4)
		form.addRow("Relay", self._relay)
		form.addRow("State", self._call)
		form.addRow("Duration", self._duration)
		form.addRow("Media", self._media)
		layout.addLayout(form)

	@QtCore.Slot(str)
	def set_relay_state(self, state: str) -> None:
		self._relay.setText(state.strip() or "-")

	@QtCore.Slot(str)
	def set_call_state(self, state: str) -> None:
		self._call.setText(state.strip() or "-")

	@QtCore.Slot(str)
	def set_duration(self, text: str) -> None:
		self._duration.setText(text)

	def set_media(self, muted: bool, video_enabled: bool, has_video: bool) -> None:
		parts = ["Mic off" if muted else "Mic on"]
		if has_video:
			parts.append("Camera on" if video_enabled else "Camera off")
		self._media.setText(", ".join(parts))


class IncomingCallBanner(QtWidgets.QFrame):
	"""Ringing prompt; hidden while nothing is ringing."""

	accept_clicked = QtCore.Signal(str)
	decline_clicked = QtCore.Signal(str)

	def __init__(self, parent=None):
		super().__init__(parent)
		self.setFrameShape(QtWidgets.QFrame.Shape.StyledPanel)
		self._session_id = ""

		self._label = QtWidgets.QLabel()
		self._accept_btn = QtWidgets.QPushButton("Accept")
		self._decline_btn = QtWidgets.QPushButton("Decline")

		row = QtWidgets.QHBoxLayout(self)
		row.addWidget(self._label, 1)
		row.addWidget(self._accept_btn)
		row.addWidget(self._decline_btn)

		self._accept_btn.clicked.connect(lambda: self.accept_clicked.emit(self._session_id))
		self._decline_btn.clicked.connect(lambda: self.decline_clicked.emit(self._session_id))
		self.hide()

	@property
	def session_id(self) -> str:
		return self._session_id

	def ring(self, session_id: str, caller_id: str, mode: str) -> None:
		self._session_id = session_id
		self._label.setText(f"Incoming {mode} call from {caller_id}")
		self.show()

	def clear(self, session_id: str = "") -> None:
		if session_id and session_id != self._session_id:
			return
		self._session_id = ""
		self.hide()
