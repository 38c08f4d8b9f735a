import os

# ✅ Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./credit_ledger.db")
RUN_MIGRATIONS = os.getenv("RUN_MIGRATIONS", "0") == "1"

# ✅ Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")

# ✅ Admin
ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

# ✅ Billing provider used when building credit reference ids ("stripe" or "creem")
BILLING_PROVIDER = os.getenv("BILLING_PROVIDER", "stripe")

# ✅ Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_PRICE_PRO_MONTHLY = os.getenv("STRIPE_PRICE_PRO_MONTHLY", "price_pro_monthly")
STRIPE_PRICE_PRO_YEARLY = os.getenv("STRIPE_PRICE_PRO_YEARLY", "price_pro_yearly")
STRIPE_PRICE_PROPLUS_MONTHLY = os.getenv("STRIPE_PRICE_PROPLUS_MONTHLY", "price_proplus_monthly")
STRIPE_PRICE_PROPLUS_YEARLY = os.getenv("STRIPE_PRICE_PROPLUS_YEARLY", "price_proplus_yearly")

# ✅ Creem
CREEM_PRICE_PRO_MONTHLY = os.getenv("CREEM_PRICE_PRO_MONTHLY")
CREEM_PRICE_PRO_YEARLY = os.getenv("CREEM_PRICE_PRO_YEARLY")
CREEM_PRICE_PROPLUS_MONTHLY = os.getenv("CREEM_PRICE_PROPLUS_MONTHLY")
CREEM_PRICE_PROPLUS_YEARLY = os.getenv("CREEM_PRICE_PROPLUS_YEARLY")
CREEM_PRO_PRODUCT_KEY_MONTHLY = os.getenv("CREEM_PRO_PLAN_PRODUCT_KEY_MONTHLY")
CREEM_PRO_PRODUCT_KEY_YEARLY = os.getenv("CREEM_PRO_PLAN_PRODUCT_KEY_YEARLY")
CREEM_PROPLUS_PRODUCT_KEY_MONTHLY = os.getenv("CREEM_PROPLUS_PLAN_PRODUCT_KEY_MONTHLY")
CREEM_PROPLUS_PRODUCT_KEY_YEARLY = os.getenv("CREEM_PROPLUS_PLAN_PRODUCT_KEY_YEARLY")
