import logging

import uvicorn

from fieldops import models  # noqa: F401  register tables with Base
from fieldops.config import settings
from fieldops.database import Base, engine
from fieldops.main import create_app

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

if not settings.firebase_configured:
    logger.warning("Firebase credentials are not configured. Only Expo tokens will receive notifications.")

app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
