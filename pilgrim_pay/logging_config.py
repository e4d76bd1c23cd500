import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

FRAUD_LOGGER_NAME = "pilgrim_pay.fraud"


def get_logger(name: str) -> logging.Logger:
    """
    Return a module-scoped logger with a consistent format.
    """
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    return logger


def get_fraud_logger() -> logging.Logger:
    """
    Logger reserved for operator-facing fraud signals (forged signatures, amount mismatches).
    """
    return get_logger(FRAUD_LOGGER_NAME)
