import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_minutes: int,
        cookie_secure: bool,
        high_expense_threshold: Decimal,
        period_start_hour: int,
        import_time_of_day_hour: int,
        upload_dir: Path,
        verification_code_ttl_minutes: int,
        verification_max_attempts: int,
        mail_from: str,
        smtp_host: str,
        smtp_port: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_minutes = token_max_age_minutes
        self.cookie_secure = cookie_secure
        self.high_expense_threshold = high_expense_threshold
        # Chart windows start at this hour of their first day; only the
        # calendar date is compared against stored expense dates.
        self.period_start_hour = period_start_hour
        self.import_time_of_day_hour = import_time_of_day_hour
        self.upload_dir = upload_dir
        self.verification_code_ttl_minutes = verification_code_ttl_minutes
        self.verification_max_attempts = verification_max_attempts
        self.mail_from = mail_from
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EXPENSES_TIMEZONE", "Asia/Phnom_Penh")
    secret_key = os.getenv(
        "EXPENSES_SECRET_KEY",
        "4d2f0c7a9be13f5e8a61c0d94b7e2a35f18c6d0e92a7b4c5d3e1f08a6b9c2d71",
    )
    token_max_age_minutes = int(os.getenv("EXPENSES_TOKEN_MAX_AGE_MINUTES", "100"))
    cookie_secure = os.getenv("EXPENSES_ENV", "development") == "production"
    high_expense_threshold = Decimal(
        os.getenv("EXPENSES_HIGH_EXPENSE_THRESHOLD", "500")
    )
    period_start_hour = int(os.getenv("EXPENSES_PERIOD_START_HOUR", "7"))
    import_time_of_day_hour = int(os.getenv("EXPENSES_IMPORT_HOUR", "12"))
    upload_dir = Path(
        os.getenv("EXPENSES_UPLOAD_DIR", str(data_dir / "uploads"))
    ).resolve()
    verification_code_ttl_minutes = int(os.getenv("EXPENSES_CODE_TTL_MINUTES", "5"))
    verification_max_attempts = int(os.getenv("EXPENSES_CODE_MAX_ATTEMPTS", "5"))
    mail_from = os.getenv(
        "EXPENSES_MAIL_FROM", "Expense Record Dashboard <no-reply@localhost>"
    )
    smtp_host = os.getenv("EXPENSES_SMTP_HOST", "")
    smtp_port = int(os.getenv("EXPENSES_SMTP_PORT", "25"))
    scheduler_enabled = _env_flag("EXPENSES_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_minutes=token_max_age_minutes,
        cookie_secure=cookie_secure,
        high_expense_threshold=high_expense_threshold,
        period_start_hour=period_start_hour,
        import_time_of_day_hour=import_time_of_day_hour,
        upload_dir=upload_dir,
        verification_code_ttl_minutes=verification_code_ttl_minutes,
        verification_max_attempts=verification_max_attempts,
        mail_from=mail_from,
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        scheduler_enabled=scheduler_enabled,
    )
