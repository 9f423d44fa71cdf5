"""
Render startup file for the storefront bot
This file is used by Render to start the application
"""

import logging
from main import main

# Configure logging for production
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

if __name__ == "__main__":
    logger.info("Starting storefront bot...")

    # Sets the Telegram webhook, starts Flask for the payment webhooks and blocks
    main()
