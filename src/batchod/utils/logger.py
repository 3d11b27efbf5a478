#########################################################################################
##
##                                  LOGGER MANAGEMENT
##                                 (utils/logger.py)
##
##          Singleton that owns the 'batchod' logger hierarchy. Library modules
##          request child loggers; applications decide if and where they print.
##
#########################################################################################

# IMPORTS ===============================================================================

import logging
import sys


# CONSTANTS =============================================================================

ROOT_LOGGER_NAME = "batchod"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%H:%M:%S"


# CLASS =================================================================================

class LoggerManager:
    """Process-wide access point to the package loggers.

    All loggers handed out are children of the ``"batchod"`` logger, so a
    single call to :meth:`configure` controls the whole library. Without
    configuration the package stays silent (a ``NullHandler`` is attached).

    Example
    -------
    .. code-block:: python

        from batchod import LoggerManager

        LoggerManager().configure(enabled=True, level=logging.DEBUG)
        logger = LoggerManager().get_logger("opt.batch_ls_estimator")
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            instance = super().__new__(cls)
            instance._root = logging.getLogger(ROOT_LOGGER_NAME)
            instance._root.addHandler(logging.NullHandler())
            instance._handler = None
            cls._instance = instance
        return cls._instance


    @property
    def root(self) -> logging.Logger:
        """The package root logger."""
        return self._root


    def get_logger(self, name: str) -> logging.Logger:
        """Return the child logger ``batchod.<name>``.

        Fully qualified module names (``batchod.opt.model``) are accepted as is.
        """
        if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
            return logging.getLogger(name)
        return self._root.getChild(name)


    def configure(
        self,
        enabled: bool = True,
        output: str | None = None,
        level: int = logging.INFO,
        format: str | None = None,
        date_format: str | None = None,
    ) -> None:
        """Attach (or detach) the package output handler.

        Parameters
        ----------
        enabled : bool
            When ``False`` the managed handler is removed and the library is silent.
        output : str, optional
            Log file path; defaults to ``sys.stdout``.
        level : int
            Level of the package root logger.
        format : str, optional
            Record format, defaults to :data:`DEFAULT_FORMAT`.
        date_format : str, optional
            Timestamp format, defaults to :data:`DEFAULT_DATE_FORMAT`.
        """
        if self._handler is not None:
            self._root.removeHandler(self._handler)
            self._handler.close()
            self._handler = None

        if not enabled:
            return

        if output is None:
            handler = logging.StreamHandler(sys.stdout)
        else:
            handler = logging.FileHandler(output)

        handler.setFormatter(
            logging.Formatter(format or DEFAULT_FORMAT, date_format or DEFAULT_DATE_FORMAT)
        )
        self._handler = handler
        self._root.addHandler(handler)
        self._root.setLevel(level)


    def set_level(self, level: int, module: str | None = None) -> None:
        """Set the level of the package logger or of one child module logger."""
        if module is None:
            self._root.setLevel(level)
        else:
            self.get_logger(module).setLevel(level)
