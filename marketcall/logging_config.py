from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
	"""Configure stdlib logging for the call client.

	The call window shows call status itself; this config targets console logs
	(useful when debugging signaling from a terminal). aiortc and aioice are
	very chatty at DEBUG, so they stay at WARNING unless MARKETCALL_RTC_DEBUG is set.
	"""

	effective_level = (level or os.environ.get("MARKETCALL_LOG_LEVEL") or "INFO").upper()

	root = logging.getLogger()
	if not root.handlers:
		logging.basicConfig(
			level=effective_level,
			format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		)
	else:
		root.setLevel(effective_level)

	if not os.environ.get("MARKETCALL_RTC_DEBUG"):
		for name in ("aiortc", "aioice"):
			logging.getLogger(name).setLevel(logging.WARNING)
