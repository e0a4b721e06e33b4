# config.py
import os
from dotenv import load_dotenv

load_dotenv()

# Storage
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./lab_scheduler.db")

# Token settings used by the identity layer
SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))

# Default privileged account, created on startup when missing
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@campus.edu")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

# Registration is restricted to these e-mail domains (comma separated)
ALLOWED_EMAIL_DOMAINS = [
    domain.strip().lower()
    for domain in os.getenv("ALLOWED_EMAIL_DOMAINS", "campus.edu").split(",")
    if domain.strip()
]

# Number of PC-NN computers created when the registry is empty
SEED_COMPUTER_COUNT = int(os.getenv("SEED_COMPUTER_COUNT", 0))

# How many waiting users hear about an early release
RELEASE_NOTIFY_LIMIT = int(os.getenv("RELEASE_NOTIFY_LIMIT", 3))

# Sign-in throttling
SIGNIN_RATE_LIMIT = int(os.getenv("SIGNIN_RATE_LIMIT", 3))
SIGNIN_RATE_WINDOW_SECONDS = int(os.getenv("SIGNIN_RATE_WINDOW_SECONDS", 60))
SIGNIN_RATE_CLEANUP_SECONDS = int(os.getenv("SIGNIN_RATE_CLEANUP_SECONDS", 300))

# 0 disables the background sweep; reads still reconcile lazily
RECONCILE_INTERVAL_SECONDS = int(os.getenv("RECONCILE_INTERVAL_SECONDS", 0))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
