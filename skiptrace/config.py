"""
Centralized configuration — env vars and engine constants.
"""
import os


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# ── Database ──────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///skiptrace.db')

# ── Providers ─────────────────────────────────────────────────────────────────
SKIP_TRACE_PRIMARY_PROVIDER = os.getenv('SKIP_TRACE_PRIMARY_PROVIDER', 'batchdata')
BATCHDATA_API_KEY = os.getenv('BATCHDATA_API_KEY')
BATCHDATA_API_URL = os.getenv('BATCHDATA_API_URL', 'https://api.batchdata.com/api')
WHITEPAGES_API_KEY = os.getenv('WHITEPAGES_API_KEY')
WHITEPAGES_API_URL = os.getenv('WHITEPAGES_API_URL', 'https://proapi.whitepages.com')
PROVIDER_TIMEOUT_SECONDS = float(os.getenv('PROVIDER_TIMEOUT_SECONDS', '20'))

# ── Run engine ────────────────────────────────────────────────────────────────
SKIP_TRACE_MAX_ATTEMPTS = int(os.getenv('SKIP_TRACE_MAX_ATTEMPTS', '3'))
SKIP_TRACE_STALE_SECONDS = int(os.getenv('SKIP_TRACE_STALE_SECONDS', '300'))
SKIP_TRACE_CONCURRENCY = int(os.getenv('SKIP_TRACE_CONCURRENCY', '4'))
SKIP_TRACE_JOB_TIMEOUT = int(os.getenv('SKIP_TRACE_JOB_TIMEOUT', '14400'))

# ── Cache ─────────────────────────────────────────────────────────────────────
SKIP_TRACE_CACHE_TTL_DAYS = int(os.getenv('SKIP_TRACE_CACHE_TTL_DAYS', '30'))
SKIP_TRACE_L1_SIZE = int(os.getenv('SKIP_TRACE_L1_SIZE', '5000'))

# ── Reports ───────────────────────────────────────────────────────────────────
RUN_REPORTS_DIR = os.getenv('RUN_REPORTS_DIR', 'run_reports')

# ── Auth ─────────────────────────────────────────────────────────────────────
ADMIN_TOKEN = os.getenv('ADMIN_TOKEN')
