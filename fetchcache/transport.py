from abc import ABC, abstractmethod
import asyncio
import logging
from typing import Optional

import requests

from .model import Request, Response


logger = logging.getLogger(__name__)


class TransportError(Exception):
    """
    The network could not produce a response for a request.
    """

    def __init__(self, request: Request, message: str = '') -> None:
        super().__init__(message or 'Failed to send {} {}'.format(request.method, request.url))
        self.__request = request

    @property
    def request(self) -> Request:
        return self.__request


class Transport(ABC):
    @abstractmethod
    async def send(self, request: Request) -> Response:
        """
        Send a request over the network.

        Any response the server gives, successful or not, is returned.

        @throws TransportError
          If no response could be obtained at all.
        """

    def close(self):
        """
        Close any resources associated with the transport.
        """


class RequestsTransport(Transport):
    """
    Sends requests with a `requests.Session`.

    The session is blocking, so each request runs on the event loop's default executor.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[float] = None) -> None:
        self.__session = session if session is not None else requests.Session()
        self.__timeout = timeout

    async def send(self, request: Request) -> Response:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._send, request)

    def _send(self, request: Request) -> Response:
        logger.info('Sending {} {}'.format(request.method, request.url))
        try:
            requests_response = self.__session.request(request.method,
                                                       request.url,
                                                       headers=dict(request.headers),
                                                       data=request.body,
                                                       timeout=self.__timeout)
        except requests.RequestException as e:
            raise TransportError(request, str(e)) from e

        return Response(status=requests_response.status_code,
                        reason=requests_response.reason or '',
                        headers=dict(requests_response.headers),
                        body=requests_response.content or b'')

    def close(self):
        self.__session.close()
