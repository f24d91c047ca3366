from __future__ import annotations

from PySide6 import QtCore, QtWidgets

from .widgets import CallStatusCard, IncomingCallBanner, LogPanel


class MainWindow(QtWidgets.QMainWindow):
	connect_clicked = QtCore.Signal()
	disconnect_clicked = QtCore.Signal()
	voice_call_clicked = QtCore.Signal()
	video_call_clicked = QtCore.Signal()
	hang_up_clicked = QtCore.Signal()
	mute_clicked = QtCore.Signal()
	video_clicked = QtCore.Signal()

	def __init__(self):
		super().__init__()
		self.setWindowTitle("marketcall")

		central = QtWidgets.QWidget()
		self.setCentralWidget(central)

		self.relay_url_edit = QtWidgets.QLineEdit()
		self.relay_url_edit.setPlaceholderText("ws://host:8765/relay")

		self.user_edit = QtWidgets.QLineEdit()
		self.user_edit.setPlaceholderText("Your participant id")

		self.remote_edit = QtWidgets.QLineEdit()
		self.remote_edit.setPlaceholderText("Participant to call")

		self.conversation_edit = QtWidgets.QLineEdit()
		self.conversation_edit.setPlaceholderText("Conversation id")

		self.connect_btn = QtWidgets.QPushButton("Connect")
		self.disconnect_btn = QtWidgets.QPushButton("Disconnect")
		self.voice_call_btn = QtWidgets.QPushButton("Voice call")
		self.video_call_btn = QtWidgets.QPushButton("Video call")
		self.mute_btn = QtWidgets.QPushButton("Mute")
		self.video_btn = QtWidgets.QPushButton("Camera off")
		self.hang_up_btn = QtWidgets.QPushButton("Hang up")

		self.incoming_banner = IncomingCallBanner()
		self.log_panel = LogPanel()
		self.status_card = CallStatusCard()

		form = QtWidgets.QFormLayout()
		form.addRow("Relay", self.relay_url_edit)
		form.addRow("User", self.user_edit)
		form.addRow("Call", self.remote_edit)
		form.addRow("Conversation", self.conversation_edit)

		relay_row = QtWidgets.QHBoxLayout()
		relay_row.addWidget(self.connect_btn)
		relay_row.addWidget(self.disconnect_btn)
		relay_row.addStretch(1)

		call_row = QtWidgets.QHBoxLayout()
		call_row.addWidget(self.voice_call_btn)
		call_row.addWidget(self.video_call_btn)
		call_row.addStretch(1)

		in_call_row = QtWidgets.QHBoxLayout()
		in_call_row.addWidget(self.mute_btn)
		in_call_row.addWidget(self.video_btn)
		in_call_row.addStretch(1)
		in_call_row.addWidget(self.hang_up_btn)

		left = QtWidgets.QVBoxLayout()
		left.addLayout(form)
		left.addLayout(relay_row)
		left.addWidget(self.incoming_banner)
		left.addLayout(call_row)
		left.addLayout(in_call_row)
		left.addWidget(self.status_card)
		left.addStretch(1)

		right = QtWidgets.QVBoxLayout()
		right.addWidget(QtWidgets.QLabel("Log"))
		right.addWidget(self.log_panel, 1)

		main = QtWidgets.QHBoxLayout(central)
		main.addLayout(left, 1)
		main.addLayout(right, 1)

		self.status = QtWidgets.QStatusBar()
		self.setStatusBar(self.status)
		self.set_status("Idle")
		self.set_in_call(False, has_video=False)

		self.connect_btn.clicked.connect(self.connect_clicked.emit)
		self.disconnect_btn.clicked.connect(self.disconnect_clicked.emit)
		self.voice_call_btn.clicked.connect(self.voice_call_clicked.emit)
		self.video_call_btn.clicked.connect(self.video_call_clicked.emit)
		self.hang_up_btn.clicked.connect(self.hang_up_clicked.emit)
		self.mute_btn.clicked.connect(self.mute_clicked.emit)
		self.video_btn.clicked.connect(self.video_clicked.emit)

	def set_status(self, text: str) -> None:
		self.status.showMessage(text)

	def set_in_call(self, in_call: bool, *, has_video: bool) -> None:
		self.voice_call_btn.setEnabled(not in_call)
		self.video_call_btn.setEnabled(not in_call)
		self.mute_btn.setEnabled(in_call)
		self.video_btn.setEnabled(in_call and has_video)
		self.hang_up_btn.setEnabled(in_call)

	def set_toggles(self, muted: bool, video_enabled: bool) -> None:
		self.mute_btn.setText("Unmute" if muted else "Mute")
		self.video_btn.setText("Camera off" if video_enabled else "Camera on")
