API_VERSION_HEADER = "X-Upscaler-Version"

# JWT Configuration
JWT_ALGORITHM = "HS256"

# Credit history pagination
CREDIT_HISTORY_DEFAULT_LIMIT = 50
CREDIT_HISTORY_MAX_LIMIT = 100
