import logging

import notifiers.logging

from deploy_audit import config

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s - %(message)s"


def get_log_handlers(logger, level=logging.WARNING):
    """Attach the Telegram alert handler when a bot token is configured."""
    if config.TELEGRAM_TOKEN is None or config.TELEGRAM_CHAT_ID is None:
        return []
    handler = notifiers.logging.NotificationHandler(
        "telegram",
        defaults={
            "token": config.TELEGRAM_TOKEN,
            "chat_id": config.TELEGRAM_CHAT_ID,
        },
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return [handler]


def configure_logging(*loggers):
    logging.basicConfig(format=LOG_FORMAT, level=logging.INFO)
    logging.getLogger().setLevel(config.OVERRIDE_LOGGING)
    handlers = []
    for logger in loggers:
        logger.setLevel(config.OVERRIDE_LOGGING)
        handlers.extend(get_log_handlers(logger))
    return handlers
