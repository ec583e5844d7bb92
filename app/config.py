"""
Application Configuration
Load settings from environment variables
"""
import os
from dotenv import load_dotenv

load_dotenv()

# Database Configuration
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = int(os.getenv("DB_PORT", 3306))
DB_USER = os.getenv("DB_USER", "root")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_NAME = os.getenv("DB_NAME", "club_ops")

# Security Configuration
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-in-production")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_HOURS = int(os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", 12))

# Application Settings
APP_NAME = os.getenv("APP_NAME", "Club Ops API")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

# Front desk rules
GYM_LOCKER_ELIGIBLE_RANGES = os.getenv("GYM_LOCKER_ELIGIBLE_RANGES", "")
UPGRADE_HOLD_MINUTES = int(os.getenv("UPGRADE_HOLD_MINUTES", 15))
OFFER_HOLD_MINUTES = int(os.getenv("OFFER_HOLD_MINUTES", 10))
CHECKOUT_CLAIM_TTL_MINUTES = int(os.getenv("CHECKOUT_CLAIM_TTL_MINUTES", 2))
LATE_FEE_BAN_DAYS = int(os.getenv("LATE_FEE_BAN_DAYS", 30))

# Scheduler
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
UPGRADE_HOLD_TICK_SECONDS = int(os.getenv("UPGRADE_HOLD_TICK_SECONDS", 30))
WAITLIST_EXPIRY_TICK_SECONDS = int(os.getenv("WAITLIST_EXPIRY_TICK_SECONDS", 60))
