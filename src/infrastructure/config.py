# src/infrastructure/config.py

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# -----------------------------
# Database
# -----------------------------
DB_CONNECT_MAX_RETRIES = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
DB_CONNECT_RETRY_DELAY = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))


# -----------------------------
# Checkout & payments
# -----------------------------
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000").rstrip("/")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "INR")
MAX_TICKETS_PER_LINE_ITEM = int(os.getenv("MAX_TICKETS_PER_LINE_ITEM", "20"))

USE_MOCK_PAYMENT = _env_bool("USE_MOCK_PAYMENT")
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")
PAYMENT_SYNC_SECRET = os.getenv("PAYMENT_SYNC_SECRET")


# -----------------------------
# E-mail
# -----------------------------
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "console")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_USE_TLS = _env_bool("EMAIL_USE_TLS", "true")
EMAIL_USER = os.getenv("EMAIL_USER")
EMAIL_PASSWORD = os.getenv("EMAIL_PASSWORD")
EMAIL_FROM = os.getenv("EMAIL_FROM", "tickets@localhost")


# -----------------------------
# Worker / retry queue
# -----------------------------
WORKER_POLLING_INTERVAL = float(os.getenv("WORKER_POLLING_INTERVAL", "5"))
WORKER_MAX_IDLE_INTERVAL = float(os.getenv("WORKER_MAX_IDLE_INTERVAL", "600"))
WORKER_BATCH_SIZE = int(os.getenv("WORKER_BATCH_SIZE", "10"))
WORKER_MAX_ATTEMPTS = int(os.getenv("WORKER_MAX_ATTEMPTS", "5"))
WORKER_SCHEDULE_INTERVAL = float(os.getenv("WORKER_SCHEDULE_INTERVAL", "3600"))
JOB_LEASE_SECONDS = int(os.getenv("JOB_LEASE_SECONDS", "600"))
RETRY_BASE_INTERVAL_MS = int(os.getenv("RETRY_BASE_INTERVAL_MS", "5000"))
RETRY_MAX_INTERVAL_MS = int(os.getenv("RETRY_MAX_INTERVAL_MS", "300000"))
ORPHANED_ORDER_MAX_AGE_HOURS = int(os.getenv("ORPHANED_ORDER_MAX_AGE_HOURS", "24"))
OLD_JOB_RETENTION_DAYS = int(os.getenv("OLD_JOB_RETENTION_DAYS", "14"))
