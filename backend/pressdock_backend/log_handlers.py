"""
Logging handlers for PressDock.
"""
import os
from logging.handlers import RotatingFileHandler


class LogDirRotatingFileHandler(RotatingFileHandler):
    """Rotating file handler that creates its log directory on the first write.

    Loading settings therefore never touches the filesystem.
    """

    def __init__(self, filename, mode='a', maxBytes=0, backupCount=0, encoding=None, delay=True):
        super().__init__(filename, mode=mode, maxBytes=maxBytes, backupCount=backupCount,
                         encoding=encoding, delay=delay)

    def _open(self):
        os.makedirs(os.path.dirname(self.baseFilename), exist_ok=True)
        return super()._open()
