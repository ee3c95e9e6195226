import os
from pathlib import Path


def _load_dotenv_if_needed() -> None:
	# Tests configure providers through monkeypatch; never read a developer .env there
	if os.getenv("PYTEST_CURRENT_TEST") or "pytest" in os.path.basename(os.getenv("_", "")):
		return
	env_path = Path(os.getenv("INKWELL_ENV_FILE", ".env"))
	if not env_path.is_file():
		return
	try:
		lines = env_path.read_text(encoding="utf-8").splitlines()
	except OSError:
		return
	for raw in lines:
		entry = raw.strip()
		if entry.startswith("export "):
			entry = entry[len("export "):].lstrip()
		if not entry or entry.startswith("#") or "=" not in entry:
			continue
		name, value = (part.strip() for part in entry.split("=", 1))
		if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
			value = value[1:-1]
		# Real environment always wins over the file
		if name and name not in os.environ:
			os.environ[name] = value


_load_dotenv_if_needed()
