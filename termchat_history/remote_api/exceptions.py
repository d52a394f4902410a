# termchat_history/remote_api/exceptions.py
#
#
#######################################################################################################################
#
# Functions:

class RemoteStoreError(Exception):
    """Base exception for remote store errors."""
    pass

class ConnectivityTimeout(RemoteStoreError):
    """Raised when the remote store cannot be reached in time (network error or timeout)."""
    pass

class RemoteAuthenticationError(RemoteStoreError):
    """Raised when the remote store rejects the configured token."""
    pass

class TransientRemoteError(RemoteStoreError):
    """Raised for failures worth retrying (5xx, throttling, a busy/locked remote database)."""
    def __init__(self, message: str, status_code: int = None, code: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code

class PermanentRemoteError(RemoteStoreError):
    """Raised for failures that will not succeed on retry (rejected request, schema mismatch)."""
    def __init__(self, message: str, status_code: int = None, code: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code

#
# End of termchat_history/remote_api/exceptions.py
########################################################################################################################
