# src/iot_fleet/utils/exceptions.py

class IoTFleetError(Exception):
    """Base exception class for the fleet messaging core"""
    pass

class ConfigurationError(IoTFleetError):
    """Raised when there are issues with configuration"""
    pass

class InitializationError(IoTFleetError):
    """Raised when component initialization fails"""
    pass

class TransportError(IoTFleetError):
    """Raised (or returned in a PublishResult) when the pub/sub transport fails"""
    pass

class NotConnectedError(TransportError):
    """The adapter is currently disconnected; publish fails fast instead of queuing"""
    pass

class PublishFailedError(TransportError):
    """The broker rejected or dropped a publish"""
    pass

class ParseError(IoTFleetError):
    """Inbound payload could not be decoded. Logged and dropped, never retried."""
    def __init__(self, topic: str, reason: str):
        super().__init__(f"Malformed payload on {topic}: {reason}")
        self.topic = topic
        self.reason = reason

class UnroutableTopic(IoTFleetError):
    """Inbound topic does not belong to any known topic family"""
    def __init__(self, topic: str):
        super().__init__(f"No route for topic: {topic}")
        self.topic = topic

class InvalidModeError(IoTFleetError):
    """Manual command rejected because automation owns the target"""
    def __init__(self, target_id: str, mode: str):
        super().__init__(f"Cannot send manual commands when {target_id} is in {mode} mode")
        self.target_id = target_id
        self.mode = mode

class TargetNotFoundError(IoTFleetError):
    """Command target is not known to the store"""
    pass

class DatabaseError(IoTFleetError):
    """Base exception for database errors"""
    pass

class ConnectionPoolError(DatabaseError):
    """Exception for connection pool related errors"""
    pass
