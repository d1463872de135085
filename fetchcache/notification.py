from abc import ABC, abstractmethod
import logging


logger = logging.getLogger(__name__)


class Notifier(ABC):
    """
    Somewhere to send user-visible notices, such as a toast in a UI.

    Notices are fire-and-forget: nothing is expected back.
    """

    @abstractmethod
    def info(self, title: str, message: str) -> None:
        pass


class LoggingNotifier(Notifier):
    def info(self, title: str, message: str) -> None:
        logger.info('{}: {}'.format(title, message))
