"""
Centralized subscription tier configuration constants.

This module defines all tier quotas, token budgets and capability flags in one
place so the plan records in ``shared.models.subscription`` never drift apart.
"""

# Free Tier Configuration
FREE_DAILY_OFFER_GENERATIONS = 2  # Taste of the council, then upgrade
FREE_DAILY_TOKEN_BUDGET = 2000
FREE_PRICE_USD = 0

# Starter Tier Configuration
STARTER_DAILY_OFFER_GENERATIONS = 25  # Generous but limited
STARTER_DAILY_TOKEN_BUDGET = 10000
STARTER_PRICE_USD = 47

# Pro Tier Configuration
PRO_DAILY_OFFER_GENERATIONS = -1  # Unlimited (key upgrade incentive)
PRO_DAILY_TOKEN_BUDGET = 25000
PRO_PRICE_USD = 197

# Vault Tier Configuration
VAULT_DAILY_OFFER_GENERATIONS = -1  # Unlimited
VAULT_DAILY_TOKEN_BUDGET = 50000
VAULT_PRICE_USD = 5000

# Shared throttling configuration
UNLIMITED = -1
SOFT_CAP_WARNING_RATIO = 0.8
DEFAULT_ESTIMATED_TOKENS = 500

# Pricing Configuration
CURRENCY = "USD"
CURRENCY_SYMBOL = "$"

# Feature descriptions for marketing
FREE_DESCRIPTION = "Two gladiator hooks a day to see what the council can do"
STARTER_DESCRIPTION = "Editable, exportable hooks and offers for growing coaches"
PRO_DESCRIPTION = "Unlimited generation plus the Pro toolkit"
VAULT_DESCRIPTION = "Everything, plus the Vault tools, swipe-copy bank and white label"
