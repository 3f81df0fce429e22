"""
Commerce pipeline configuration.

Values are read from the environment once at import time.
"""

import os


class CommerceSettings:
    # Pricing
    CURRENCY: str = os.getenv("CURRENCY", "eur")
    FREE_SHIPPING_THRESHOLD: float = float(os.getenv("FREE_SHIPPING_THRESHOLD", "100"))
    FLAT_SHIPPING_FEE: float = float(os.getenv("FLAT_SHIPPING_FEE", "5.99"))
    TAX_RATE: float = float(os.getenv("TAX_RATE", "0.19"))

    # Stripe
    STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "whsec_local_development")
    WEBHOOK_TOLERANCE_SECONDS: int = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Checkout sessions
    CHECKOUT_SESSION_TTL_MINUTES: int = int(os.getenv("CHECKOUT_SESSION_TTL_MINUTES", "30"))
    METADATA_VALUE_LIMIT: int = int(os.getenv("METADATA_VALUE_LIMIT", "500"))

    # Fulfillment lock
    FULFILLMENT_LOCK_TIMEOUT_SECONDS: float = float(os.getenv("FULFILLMENT_LOCK_TIMEOUT_SECONDS", "30"))

    # Admin updates
    TRACKING_NUMBER_PATTERN: str = os.getenv("TRACKING_NUMBER_PATTERN", r"^[A-Z0-9]{8,20}$")

    # Alerts for reversal failures and stock shortfalls
    ADMIN_EMAIL: str = os.getenv("ADMIN_EMAIL", "admin@handyland.local")

    @property
    def stripe_configured(self) -> bool:
        key = self.STRIPE_SECRET_KEY
        return bool(key) and key.startswith(("sk_", "rk_")) and "YOUR_KEY" not in key


settings = CommerceSettings()
