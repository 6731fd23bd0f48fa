import os

# ✅ Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./entitlements.db")

# ✅ Security
SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
SERVICE_TOKEN_SUBJECT = os.getenv("SERVICE_TOKEN_SUBJECT", "link-function")

# ✅ Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

# Provider price ids per paid tier
STRIPE_PRICE_ID_BRONZE = os.getenv("STRIPE_PRICE_ID_BRONZE")
STRIPE_PRICE_ID_GOLD = os.getenv("STRIPE_PRICE_ID_GOLD")
STRIPE_PRICE_ID_DIAMOND = os.getenv("STRIPE_PRICE_ID_DIAMOND")
STRIPE_PRICE_ID_MEGASTAR = os.getenv("STRIPE_PRICE_ID_MEGASTAR")
STRIPE_PRICE_ID_RESUME_BASIC = os.getenv("STRIPE_PRICE_ID_RESUME_BASIC")
STRIPE_PRICE_ID_RESUME_PREMIUM = os.getenv("STRIPE_PRICE_ID_RESUME_PREMIUM")

# ✅ Server link function
# Empty URL means the link service runs in-process.
LINK_FUNCTION_URL = os.getenv("LINK_FUNCTION_URL", "")
LINK_TIMEOUT_SECONDS = float(os.getenv("LINK_TIMEOUT_SECONDS", "10"))

# ✅ Reconciliation
REDUNDANCY_DEBOUNCE_SECONDS = float(os.getenv("REDUNDANCY_DEBOUNCE_SECONDS", "1.5"))
INTENT_TTL_MINUTES = int(os.getenv("INTENT_TTL_MINUTES", "60"))
CONFIRMATION_MARKER_TTL_MINUTES = int(os.getenv("CONFIRMATION_MARKER_TTL_MINUTES", "10"))

# ✅ App
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
