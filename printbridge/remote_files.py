"""Locate and download job files from the printer's storage over implicit FTPS."""

from __future__ import annotations

import io
import logging
import posixpath
import socket
import ssl
from dataclasses import dataclass
from ftplib import FTP_TLS, all_errors
from typing import Callable, Iterable, List, Optional

from .errors import NotFound, TransportError

logger = logging.getLogger(__name__)

FTPS_PORT = 990
FTPS_USER = "bblp"
STAGING_DIRECTORY = "cache"


def makeTlsContext(insecure: bool = True) -> ssl.SSLContext:
    """Create a TLS context tuned for Bambu printers."""

    context = ssl.create_default_context()
    try:  # pragma: no cover - depends on OpenSSL version
        context.options |= ssl.OP_NO_TLSv1_3
    except AttributeError:
        pass

    if insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    try:  # pragma: no cover - depends on OpenSSL cipher availability
        context.set_ciphers("DEFAULT:@SECLEVEL=1")
    except ssl.SSLError:
        pass

    return context


class ImplicitFtpTls(FTP_TLS):
    """Implicit FTPS client where TLS handshakes on connect()."""

    def __init__(self, *args, context: Optional[ssl.SSLContext] = None, **kwargs):
        tlsContext = context or makeTlsContext(insecure=True)
        super().__init__(*args, context=tlsContext, **kwargs)
        self.context = tlsContext

    def connect(
        self,
        host: str = "",
        port: int = FTPS_PORT,
        timeout: Optional[float] = None,
        source_address=None,
    ) -> str:
        if host:
            self.host = host
        if port:
            self.port = port
        if timeout is not None:
            self.timeout = timeout
        self.sock = socket.create_connection((self.host, self.port), self.timeout, source_address)
        self.af = self.sock.family
        self.sock = self.context.wrap_socket(self.sock, server_hostname=self.host)
        self.file = self.sock.makefile("r", encoding=self.encoding)
        self.welcome = self.getresp()
        return self.welcome


def buildRemoteFileCandidates(rawPathHint: str) -> List[str]:
    """Return every plausible remote path for *rawPathHint*, most likely first."""

    normalized = str(rawPathHint or "").strip().replace("\\", "/")
    while "//" in normalized:
        normalized = normalized.replace("//", "/")
    stripped = normalized.lstrip("/")
    if not stripped:
        return []

    candidates: List[str] = []
    seen: set[str] = set()

    def addCandidate(value: str) -> None:
        if value and value not in seen:
            candidates.append(value)
            seen.add(value)

    baseName = posixpath.basename(stripped.rstrip("/"))
    stagingPrefix = f"{STAGING_DIRECTORY}/"

    addCandidate(stripped)
    addCandidate(f"/{stripped}")
    if not stripped.startswith(stagingPrefix):
        addCandidate(f"{stagingPrefix}{stripped}")
        addCandidate(f"/{stagingPrefix}{stripped}")
    if baseName:
        addCandidate(f"{stagingPrefix}{baseName}")
        addCandidate(f"/{stagingPrefix}{baseName}")
        addCandidate(baseName)
        addCandidate(f"/{baseName}")
    return candidates


@dataclass(frozen=True)
class RetrievedFile:
    """Bytes downloaded from the printer and the path that produced them."""

    data: bytes
    resolved_path: str


class RemoteFileLocator:
    """Download job files from a printer, trying several path spellings."""

    def __init__(
        self,
        ip: str,
        accessCode: str,
        *,
        port: int = FTPS_PORT,
        timeout: float = 30.0,
        insecureTls: bool = True,
        clientFactory: Optional[Callable[..., FTP_TLS]] = None,
    ) -> None:
        self.ip = ip
        self.accessCode = accessCode
        self.port = port
        self.timeout = timeout
        self.insecureTls = insecureTls
        self._clientFactory = clientFactory

    def _openSession(self) -> FTP_TLS:
        if self._clientFactory is not None:
            ftps = self._clientFactory()
        else:
            ftps = ImplicitFtpTls(context=makeTlsContext(insecure=self.insecureTls))
        try:
            ftps.connect(self.ip, self.port, timeout=self.timeout)
            ftps.login(FTPS_USER, self.accessCode)
            ftps.prot_p()
            ftps.set_pasv(True)
            ftps.voidcmd("TYPE I")
        except all_errors as connectionError:
            _closeSession(ftps)
            message = f"Failed to open FTPS session to {self.ip}:{self.port}: {connectionError}"
            logger.error("[locator] %s", message)
            raise TransportError(message) from connectionError
        return ftps

    def _download(self, ftps: FTP_TLS, path: str) -> bytes:
        buffer = io.BytesIO()
        ftps.retrbinary(f"RETR {path}", buffer.write, blocksize=64 * 1024)
        return buffer.getvalue()

    def retrieve(self, candidates: Iterable[str]) -> RetrievedFile:
        """Return the first candidate that downloads at least one byte."""
        attempted: List[str] = []
        candidateList = list(candidates)
        if not candidateList:
            raise NotFound(attempted)

        ftps = self._openSession()
        try:
            for candidate in candidateList:
                attempted.append(candidate)
                try:
                    data = self._download(ftps, candidate)
                except Exception as downloadError:
                    logger.debug("[locator] RETR %s failed: %s", candidate, downloadError)
                    continue
                if not data:
                    logger.debug("[locator] RETR %s returned no data", candidate)
                    continue
                logger.info("[locator] Retrieved %s (%d bytes)", candidate, len(data))
                return RetrievedFile(data=data, resolved_path=candidate)
        finally:
            _closeSession(ftps)

        error = NotFound(attempted)
        logger.warning("[locator] %s", error)
        raise error

    def fetch(self, rawPathHint: str) -> RetrievedFile:
        return self.retrieve(buildRemoteFileCandidates(rawPathHint))


def _closeSession(ftps: FTP_TLS) -> None:
    try:
        ftps.quit()
    except Exception:
        try:
            ftps.close()
        except Exception:
            logger.debug("[locator] Closing FTPS session failed", exc_info=True)
