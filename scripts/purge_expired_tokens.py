"""
Delete expired refresh tokens.

Run once from cron:        python scripts/purge_expired_tokens.py
Or keep it running:        python scripts/purge_expired_tokens.py --interval 3600
"""

import argparse
import logging
import sys
import time
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sessionguard.config import settings  # noqa: E402
from sessionguard.core.database import SessionLocal  # noqa: E402
from sessionguard.services.refresh_token_service import RefreshTokenService  # noqa: E402

logger = logging.getLogger("purge_expired_tokens")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument(
        "--interval",
        type=int,
        default=0,
        help="Seconds between purges; 0 purges once and exits",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    service = RefreshTokenService(SessionLocal, config=settings)

    if args.interval <= 0:
        logger.info("Purged %d expired refresh tokens", service.purge_expired())
        return

    try:
        while True:
            service.purge_expired()
            time.sleep(args.interval)
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
