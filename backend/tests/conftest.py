import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))

# auth_service refuses to import without a signing secret
os.environ.setdefault("JWT_SECRET", "test-signing-secret-not-for-production-use")
os.environ.pop("ENCRYPTION_KEY", None)
