from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # Email relay (optional HTTP endpoint that delivers waitlist emails)
    email_relay_url: str = ""
    email_relay_token: str = ""

    # Server
    server_base_url: str = "http://localhost:8000"
    port: int = 8000

    # Practice information
    business_name: str = "Family Medical Practice"
    office_timezone: str = "America/New_York"
    default_tenant_id: str = "default"

    # Holds
    hold_ttl_hours: float = 24
    default_max_matches: int = 5
    matcher_max_results: int = 10

    # Notification rate limits (per patient)
    max_notifications_per_hour: int = 1
    max_notifications_per_day: int = 3
    notification_cooldown_minutes: int = 60

    # Inbound replies only match offers sent within this window
    reply_lookback_hours: int = 48

    # Background sweep of expired holds
    hold_sweep_interval_minutes: int = 15

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
