import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

AUTH_SALT = os.getenv("AUTH_SALT", "skillswap_salt")
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()}
CORS_ORIGINS =[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Credits economy
WELCOME_BONUS = int(os.getenv("WELCOME_BONUS", 50))
REFERRAL_BONUS = int(os.getenv("REFERRAL_BONUS", 5))
DEFAULT_MAX_CREDITS = int(os.getenv("DEFAULT_MAX_CREDITS", 100))
# idempotency keys remembered on each wallet document
APPLIED_KEYS_KEPT = int(os.getenv("APPLIED_KEYS_KEPT", 200))

CREDIT_PACKS = [
    {"credits": 50, "price": 4.99, "popular": False},
    {"credits": 100, "price": 8.99, "popular": True},
    {"credits": 250, "price": 19.99, "popular": False},
    {"credits": 500, "price": 34.99, "popular": False},
]
