import os
import sys
import tempfile

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Must happen before agent_rpc is imported: Config reads the environment at import.
# Child processes spawned by tests inherit the same home and import path.
_HOME = tempfile.mkdtemp(prefix="agent_rpc_test_home_")
os.environ["AGENT_RPC_HOME"] = _HOME
os.environ["PYTHONPATH"] = os.pathsep.join(p for p in (ROOT, os.environ.get("PYTHONPATH")) if p)
for _name in list(os.environ):
    if _name.startswith("AGENT_RPC_") and _name != "AGENT_RPC_HOME":
        del os.environ[_name]

with open(os.path.join(_HOME, "models.yaml"), "w", encoding="utf-8") as _f:
    _f.write(
        "providers:\n"
        "  google:\n"
        "    models:\n"
        "      - id: model-x\n"
        "        context_window: 32000\n"
    )

if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture
def home_dir():
    return _HOME


@pytest.fixture
def sessions_dir(tmp_path):
    path = tmp_path / "sessions"
    path.mkdir()
    return str(path)
