import os
import sys
from pathlib import Path

# Default env for app settings in tests.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("API_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("BILLING_STORE", "memory")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-with-enough-length-for-hs256")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("LEMONSQUEEZY_WEBHOOK_SECRET", "ls-test-secret")
os.environ.setdefault(
    "STRIPE_PRICE_MAP",
    "pro-monthly=price_pro_m,pro-annually=price_pro_y,unlimited-monthly=price_unl_m,unlimited-annually=price_unl_y",
)

# Ensure "apps/api" is on sys.path so imports like "from app.main import app" work in CI.
API_ROOT = Path(__file__).resolve().parent
if str(API_ROOT) not in sys.path:
    sys.path.insert(0, str(API_ROOT))
