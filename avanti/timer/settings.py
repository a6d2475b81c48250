import os
from pathlib import Path

# Ledger service the client engine talks to
API_URL = os.getenv("AVANTI_API_URL", "http://localhost:8000")
API_TOKEN = os.getenv("AVANTI_API_TOKEN", "")

# Crash-recovery breadcrumb for the session currently open in this process
BREADCRUMB_PATH = Path(os.getenv(
    "AVANTI_BREADCRUMB_PATH",
    str(Path.home() / ".avanti" / "current_task_session.json")
))

# Upper bound for the blocking close sent while shutting down
SYNC_FLUSH_TIMEOUT = float(os.getenv("AVANTI_SYNC_FLUSH_TIMEOUT", "5.0"))

REQUEST_TIMEOUT = float(os.getenv("AVANTI_REQUEST_TIMEOUT", "10.0"))

# Seconds between elapsed-time refreshes of a tracked task
TICK_INTERVAL = float(os.getenv("AVANTI_TICK_INTERVAL", "1.0"))
