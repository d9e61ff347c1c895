import logging

import cloudinary

from config import Config

logger = logging.getLogger(__name__)


def configure_cloudinary():
    # CLOUDINARY_URL in the environment is picked up by the SDK on its own
    if Config.CLOUDINARY_CLOUD_NAME:
        cloudinary.config(
            cloud_name=Config.CLOUDINARY_CLOUD_NAME,
            api_key=Config.CLOUDINARY_API_KEY,
            api_secret=Config.CLOUDINARY_API_SECRET,
            secure=True,
        )
    logger.info("Cloudinary configured (cloud=%s)", cloudinary.config().cloud_name)
    return cloudinary
