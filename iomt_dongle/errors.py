"""
Exceptions raised by the IoMT dongle bridge.
"""


class DongleError(Exception):
    """Base class for all dongle errors"""


class ConfigurationError(DongleError):
    """Raised when the dongle configuration cannot be used"""


class ConfigurationMissingError(ConfigurationError):
    """Raised when no configuration file can be found"""


class ConfigurationInvalidError(ConfigurationError):
    """Raised when the configuration file is malformed or lacks device_port"""


class MiddlewareError(DongleError):
    """Raised by the middleware on an unrecoverable condition"""


class MiddlewareConnectError(MiddlewareError):
    """Raised when no configured broker accepted the connection"""


class MiddlewareStartError(DongleError):
    """Raised when the middleware could not be initialized and connected"""


class DriverStartError(DongleError):
    """Raised when the device driver could not be opened or subscribed"""
