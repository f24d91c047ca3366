from __future__ import annotations

import argparse
import os
import sys

from .logging_config import setup_logging


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(prog="marketcall", description="marketcall voice/video client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use MARKETCALL_LOG_LEVEL.",
	)
	parser.add_argument(
		"--relay-url",
		default=os.environ.get("MARKETCALL_RELAY_URL", "ws://127.0.0.1:8765/relay"),
		help="WebSocket relay URL",
	)
	parser.add_argument(
		"--user",
		default=os.environ.get("MARKETCALL_USER", os.environ.get("USER", "")),
		help="Local participant id",
	)
	return parser


def main(argv: list[str] | None = None) -> int:
	args = build_parser().parse_args(argv)

	setup_logging(args.log_level)

	try:
		from .ui.app import AppConfig, CallClientApp, create_qt_app
	except ImportError as e:
		print(f"Failed to import UI dependencies: {e}")
		print("Install the client with: pip install marketcall")
		return 2

	qt_app = create_qt_app()
	controller = CallClientApp(AppConfig(relay_url=args.relay_url, user=args.user))
	controller.start()
	qt_app.aboutToQuit.connect(controller.shutdown)

	return qt_app.exec()


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
