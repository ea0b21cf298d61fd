import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()  # loads .env for local dev

@dataclass(frozen=True)
class Settings:
    env: str = os.getenv("ENV", "local")
    service_name: str = os.getenv("SERVICE_NAME", "stage-engine")
    database_url: str = os.getenv("DATABASE_URL", "")

    # "postgres" in deployed envs, "memory" for local poking without a DB
    stage_store: str = os.getenv("STAGE_STORE", "postgres")

    # Backfill is called by the scheduler with `Authorization: Bearer <CRON_SECRET>`.
    # An empty secret disables the endpoint.
    cron_secret: str = os.getenv("CRON_SECRET", "")
    backfill_max_jobs: int = int(os.getenv("BACKFILL_MAX_JOBS", "500"))

    # Dollar tolerance when matching a payment to a proposal milestone
    payment_tolerance: float = float(os.getenv("PAYMENT_TOLERANCE", "5"))

settings = Settings()
