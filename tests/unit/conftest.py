import os

from cryptography.fernet import Fernet

# Unit tests never reach PostgreSQL or Redis; every test wires its own SQLite
# engine and in-memory Redis stand-in.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/15")
os.environ.setdefault("MARQUEE_APP_KEY", Fernet.generate_key().decode())
