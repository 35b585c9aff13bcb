"""FTP/FTPS protocol adapter.

Uses a stateful ``ftplib`` session per call (connect, login, ``PROT P`` when
TLS is enabled, passive or active data connections) run in the default
executor so the event loop is never blocked.
"""

import asyncio
import ftplib
import logging
import socket
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..configuration.models import FtpSettings, ProtocolType
from ..errors import ConfigurationError, ErrorCategory, TransientTransportError, TransportError
from .base import DiscoveredFile, ProtocolAdapter, join_path, register_adapter, select_files
from .secrets import SecretResolver


logger = logging.getLogger(__name__)


def classify_ftp_error(error: BaseException) -> TransportError:
    """Map ftplib and socket failures to retryable or non-retryable errors."""
    if isinstance(error, TransportError):
        return error
    message = str(error)
    if isinstance(error, ftplib.error_perm):
        code = message[:3]
        if code == '530':
            return TransientTransportError(f"FTP login rejected: {message}", ErrorCategory.AUTHENTICATION_FAILURE)
        if code == '550':
            return ConfigurationError(f"FTP path not available: {message}")
        return ConfigurationError(f"FTP command rejected: {message}", ErrorCategory.PROTOCOL_ERROR)
    if isinstance(error, (ftplib.error_temp, ftplib.error_reply, ftplib.error_proto, EOFError)):
        return TransientTransportError(f"FTP protocol error: {message}", ErrorCategory.PROTOCOL_ERROR)
    if isinstance(error, TimeoutError):
        return TransientTransportError(f"FTP connection timed out: {message}", ErrorCategory.CONNECTION_TIMEOUT)
    if isinstance(error, socket.gaierror):
        return ConfigurationError(f"FTP server could not be resolved: {message}")
    if isinstance(error, OSError):
        return TransientTransportError(f"FTP connection failed: {message}", ErrorCategory.PROTOCOL_ERROR)
    return TransientTransportError(f"Unexpected FTP failure: {message}", ErrorCategory.UNKNOWN_ERROR)


def parse_mlsd_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an MLSD ``modify`` fact (YYYYMMDDHHMMSS[.sss], UTC)."""
    if not value:
        return None
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


@register_adapter(ProtocolType.FTP)
class FtpProtocolAdapter(ProtocolAdapter):
    """Discovers files in an FTP directory."""

    settings_class = FtpSettings

    def __init__(
        self,
        settings: FtpSettings,
        secret_resolver: SecretResolver,
        ftp_factory: Optional[Callable[[], ftplib.FTP]] = None
    ):
        super().__init__(settings, secret_resolver)
        self._ftp_factory = ftp_factory or self._create_client

    async def check_for_files(
        self,
        address: str,
        path_pattern: str,
        filename_pattern: str,
        extension_filter: Optional[str] = None
    ) -> List[DiscoveredFile]:
        password = await self.secret_resolver.resolve(self.settings.password_secret_ref)

        loop = asyncio.get_running_loop()
        try:
            entries = await loop.run_in_executor(None, self._list_directory, address, password, path_pattern)
        except ftplib.all_errors as e:
            raise classify_ftp_error(e) from e

        files = select_files(entries, filename_pattern, extension_filter)
        logger.info(
            f"FTP {address}:{self.settings.port}/{join_path(path_pattern)}: "
            f"{len(files)} of {len(entries)} files match '{filename_pattern}'"
        )
        return files

    async def test_connection(self) -> bool:
        try:
            password = await self.secret_resolver.resolve(self.settings.password_secret_ref)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._send_noop, password)
            return True
        except TransportError as e:
            logger.warning(f"FTP connection test failed for {self.settings.server}: {e}")
            return False
        except ftplib.all_errors as e:
            logger.warning(f"FTP connection test failed for {self.settings.server}: {classify_ftp_error(e)}")
            return False

    def _create_client(self) -> ftplib.FTP:
        if self.settings.use_tls:
            return ftplib.FTP_TLS(timeout=self.settings.connection_timeout_seconds)
        return ftplib.FTP(timeout=self.settings.connection_timeout_seconds)

    def _open_session(self, address: str, password: str) -> ftplib.FTP:
        ftp = self._ftp_factory()
        try:
            ftp.connect(address, self.settings.port, timeout=self.settings.connection_timeout_seconds)
            ftp.login(self.settings.username, password)
            if isinstance(ftp, ftplib.FTP_TLS):
                ftp.prot_p()
            ftp.set_pasv(self.settings.use_passive_mode)
        except Exception:
            self._close_session(ftp)
            raise
        return ftp

    def _send_noop(self, password: str) -> None:
        ftp = self._open_session(self.settings.server, password)
        try:
            ftp.voidcmd('NOOP')
        finally:
            self._close_session(ftp)

    def _list_directory(self, address: str, password: str, path: str) -> List[DiscoveredFile]:
        ftp = self._open_session(address, password)
        try:
            return self._list_entries(ftp, address, '/' + join_path(path))
        finally:
            self._close_session(ftp)

    def _list_entries(self, ftp: ftplib.FTP, address: str, directory: str) -> List[DiscoveredFile]:
        try:
            return [
                self._to_file(address, directory, name, int(facts.get('size') or 0),
                              parse_mlsd_timestamp(facts.get('modify')))
                for name, facts in ftp.mlsd(directory, facts=['type', 'size', 'modify'])
                if facts.get('type', 'file') == 'file'
            ]
        except ftplib.error_perm as e:
            # 500-502: server does not implement MLSD
            if not str(e).startswith(('500', '501', '502')):
                raise
            logger.debug(f"MLSD unsupported by {address}, falling back to NLST")

        ftp.voidcmd('TYPE I')
        files = []
        for entry in ftp.nlst(directory):
            name = entry.rsplit('/', 1)[-1]
            if name in ('', '.', '..'):
                continue
            try:
                size = ftp.size(f"{directory.rstrip('/')}/{name}")
            except ftplib.error_perm:
                # Directories have no size
                continue
            files.append(self._to_file(address, directory, name, size or 0, None))
        return files

    def _to_file(
        self,
        address: str,
        directory: str,
        name: str,
        size: int,
        modified_at: Optional[datetime]
    ) -> DiscoveredFile:
        full_path = '/' + join_path(directory, name)
        return DiscoveredFile(
            name=name,
            location=f"ftp://{address}:{self.settings.port}{full_path}",
            size_bytes=size,
            modified_at=modified_at,
            metadata={"directory": directory}
        )

    @staticmethod
    def _close_session(ftp: ftplib.FTP) -> None:
        try:
            ftp.quit()
        except ftplib.all_errors:
            ftp.close()
