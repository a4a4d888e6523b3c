MODEL_VERSION = "v1.0"
Z95 = 1.65  # 95% service level for safety stock
LEAD_TIME_DAYS = 7  # default supplier lead time in days (override via API or supplier data)
REVIEW_DAYS = 7  # days between replenishment cycles
BUFFER_DAYS = 0
DEFAULT_HORIZON_DAYS = 30
DEFAULT_LOOKBACK_DAYS = 90  # sales history window for demand velocity
