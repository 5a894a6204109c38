import os
import re
from pathlib import Path
from typing import Dict, Optional, Tuple

_ASSIGNMENT_RE = re.compile(r"^(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?P<value>.*)$")


def parse_env_line(line: str) -> Optional[Tuple[str, str]]:
	"""``KEY=value`` (optionally ``export``-ed and quoted) to a pair; None for comments and noise."""
	text = line.strip()
	if not text or text.startswith("#"):
		return None
	m = _ASSIGNMENT_RE.match(text)
	if m is None:
		return None
	value = m.group("value").strip()
	if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
		value = value[1:-1]
	elif " #" in value:
		value = value.split(" #", 1)[0].rstrip()
	return m.group("key"), value


def read_env_file(path: Path) -> Dict[str, str]:
	try:
		lines = path.read_text(encoding="utf-8").splitlines()
	except (OSError, UnicodeDecodeError):
		return {}
	pairs = (parse_env_line(line) for line in lines)
	return dict(p for p in pairs if p is not None)


def _load_dotenv_if_needed() -> None:
	# Tests configure settings explicitly; a developer's .env must not leak in
	if os.getenv("PYTEST_CURRENT_TEST"):
		return
	for key, value in read_env_file(Path(os.getenv("DECANTER_ENV_FILE", ".env"))).items():
		os.environ.setdefault(key, value)


_load_dotenv_if_needed()
