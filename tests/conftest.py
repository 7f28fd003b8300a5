import os
import sys
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Point the module-level store at a throwaway database before app imports
_TEST_DIR = tempfile.mkdtemp(prefix="cyber-dice-tests-")
os.environ["DB_PATH"] = os.path.join(_TEST_DIR, "test_wallet.db")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("LOG_LEVEL", "WARNING")
