"""Remote API connections (REST and SOAP) for Content Manager.

REST sessions log in with ``POST /api/{version}/login`` and send the
returned token as a Bearer header; a single re-login is attempted when a
call is rejected with 401. SOAP sessions call the ``Login`` action on
``ServiceAPI.svc`` and send the returned session id in the SOAP header.

Classes:
    ApiConnection: Connection implementation for ``REST_API`` targets

Example:
    >>> connection = ApiConnection(config)
    >>> await connection.connect()
    >>> result = await connection.execute(connection.query_builder.system_info())
    >>> result.first()["version"]
    '24.4.0'
"""

import asyncio
import json
import time
import uuid
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple

import aiohttp

from ..config.models import RestApiConfig
from ..core.base import AsyncComponent
from ..core.exceptions import (
    AuthenticationError,
    CMConnectorException,
    ConfigError,
    ConnectionError,
    ErrorCodes,
    QueryError,
    TimeoutError,
)
from ..database.models import QueryResult
from ..database.query_builder import ApiRequest, ApiRequestBuilder
from ..logging import get_logger

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
CM_NS = "http://www.opentext.com/cm"

ET.register_namespace("soap", SOAP_ENV_NS)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _element_to_row(element: ET.Element) -> Dict[str, Any]:
    return {_local_name(child.tag): child.text for child in element}


def _append_field(parent: ET.Element, name: str, value: Any) -> None:
    if value is None:
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _append_field(parent, name, item)
        return
    element = ET.SubElement(parent, f"{{{CM_NS}}}{name}")
    if isinstance(value, dict):
        for child_name, child_value in value.items():
            _append_field(element, child_name, child_value)
    else:
        element.text = str(value)


def build_soap_envelope(action: str, fields: Dict[str, Any], session_id: Optional[str] = None) -> bytes:
    """Build a SOAP 1.1 envelope for ``action``.

    Field values are escaped by ElementTree; ``None`` values are omitted,
    dicts become nested elements and lists become repeated elements.
    """
    envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
    if session_id is not None:
        header = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
        ET.SubElement(header, f"{{{CM_NS}}}SessionId").text = session_id
    body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    action_element = ET.SubElement(body, f"{{{CM_NS}}}{action}")
    for name, value in fields.items():
        _append_field(action_element, name, value)
    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)


def parse_soap_response(body: bytes) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """Parse a SOAP response into rows.

    Returns:
        ``(rows, fault)`` where ``fault`` is the fault string, if any

    Raises:
        QueryError: If the body is not well-formed XML
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise QueryError(
            f"Malformed SOAP response: {e}",
            code=ErrorCodes.QUERY_EXECUTION_FAILED,
        ) from e

    soap_body = next((el for el in root if _local_name(el.tag) == "Body"), None)
    if soap_body is None:
        return [], None

    for element in soap_body:
        name = _local_name(element.tag)
        if name == "Fault":
            fault = next((c.text for c in element if _local_name(c.tag) == "faultstring"), None)
            return [], fault or "SOAP fault"
        if name.endswith("Response"):
            results = next((c for c in element if _local_name(c.tag) == "Results"), None)
            if results is not None:
                return [_element_to_row(item) for item in results], None
            return [_element_to_row(element)], None
    return [], None


def normalize_json_rows(data: Any) -> List[Dict[str, Any]]:
    """Normalize a REST payload into a list of row dictionaries.

    Accepts a bare list, ``{"results": [...]}``, ``{"data": ...}``, or a
    single object.
    """
    if isinstance(data, dict):
        if isinstance(data.get("results"), list):
            data = data["results"]
        elif "data" in data:
            data = data["data"]
    if data is None:
        return []
    items = data if isinstance(data, list) else [data]
    return [item if isinstance(item, dict) else {"value": item} for item in items]


class ApiConnection(AsyncComponent[RestApiConfig]):
    """A single authenticated session against the CM REST or SOAP API.

    Attributes:
        kind: Protocol kind used for adapter resolution (``api``)
        created_at: When the object was created
        last_used: When the last call finished
        use_count: Number of calls executed
        last_error: Message of the most recent failure
    """

    component_name: ClassVar[str] = "ApiConnection"
    kind = "api"

    def __init__(self, config: RestApiConfig, *, password: Optional[str] = None) -> None:
        """Initialize API connection.

        Args:
            config: Remote API configuration
            password: Resolved password; defaults to the inline config password

        Raises:
            ConfigError: If neither an API key nor a password is available
        """
        super().__init__(config)
        if password is None and config.password is not None:
            password = config.password.get_secret_value()
        if password is None and config.api_key is None:
            raise ConfigError(
                "No password resolved for remote API access",
                code=ErrorCodes.CREDENTIAL_NOT_FOUND,
                context={"system_id": config.system_id, "credential_ref": config.credential_ref},
            )
        self._password = password
        self._base_url = config.resolved_base_url
        self._session: Optional[aiohttp.ClientSession] = None
        self._token: Optional[str] = None
        self._healthy = True
        self._version_info: Any = None
        self._connection_id = str(uuid.uuid4())
        self._query_builder = ApiRequestBuilder(protocol=config.protocol, api_version=config.api_version)

        self.created_at = datetime.now()
        self.last_used = self.created_at
        self.use_count = 0
        self.last_error: Optional[str] = None

        self.logger = get_logger(f"connector.api.{config.system_id}").bind(
            connection_id=self._connection_id,
            protocol=config.protocol,
        )

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def system_id(self) -> str:
        return self.config.system_id

    @property
    def is_open(self) -> bool:
        return self._initialized and self._session is not None and not self._session.closed

    @property
    def is_healthy(self) -> bool:
        return self._healthy

    @property
    def version_info(self) -> Any:
        return self._version_info

    @property
    def query_builder(self) -> ApiRequestBuilder:
        return self._query_builder

    def cache_version_info(self, info: Any) -> None:
        """Cache detected version information; later calls are ignored."""
        if self._version_info is None:
            self._version_info = info

    def _context(self, **extra: Any) -> Dict[str, Any]:
        return {
            "system_id": self.system_id,
            "connection_id": self._connection_id,
            "base_url": self._base_url,
            **extra,
        }

    async def connect(self) -> None:
        await self.initialize()

    async def disconnect(self) -> None:
        await self.cleanup()

    async def reconnect(self) -> None:
        """Close and re-open the session, clearing cached version info."""
        await self.disconnect()
        self._version_info = None
        self._healthy = True
        await self.connect()

    async def _async_initialize(self) -> None:
        start = time.perf_counter()
        self._session = aiohttp.ClientSession(
            headers={"Accept": "application/json", **self.config.headers},
            timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            connector=aiohttp.TCPConnector(ssl=self.config.verify_ssl),
        )
        try:
            await self._login()
        except BaseException:
            await self._session.close()
            self._session = None
            raise

        self._healthy = True
        self.logger.info(
            "API session opened",
            base_url=self._base_url,
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    async def _async_cleanup(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            if self._token is not None and self.config.protocol == "rest":
                await self._logout(session)
        finally:
            self._token = None
            await session.close()
            self.logger.debug("API session closed", use_count=self.use_count)

    async def _logout(self, session: aiohttp.ClientSession) -> None:
        url = f"{self._base_url}/api/{self.config.api_version}/logout"
        try:
            async with session.post(url, headers=self._auth_headers()) as response:
                if response.status >= 400:
                    self.logger.warning("Logout rejected", status=response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning("Logout failed", error=str(e))

    def _auth_headers(self) -> Dict[str, str]:
        if self.config.api_key is not None:
            return {"X-API-Key": self.config.api_key.get_secret_value()}
        if self._token is not None and self.config.protocol == "rest":
            return {"Authorization": f"Bearer {self._token}"}
        return {}

    async def _login(self) -> None:
        if self.config.api_key is not None:
            return
        if self.config.protocol == "soap":
            await self._login_soap()
        else:
            await self._login_rest()

    async def _login_rest(self) -> None:
        payload = {
            "username": self.config.username,
            "password": self._password,
            "domain": self.config.domain,
        }
        status, body = await self._transport(
            "POST",
            f"/api/{self.config.api_version}/login",
            json_body={k: v for k, v in payload.items() if v is not None},
            phase="login",
        )
        if status in (401, 403):
            raise self._auth_error(status)
        if status >= 400:
            raise self._status_error(status, body, phase="login")
        try:
            token = json.loads(body or b"{}").get("token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise AuthenticationError(
                "Login succeeded but no session token was returned",
                code=ErrorCodes.AUTH_FAILED,
                context=self._context(phase="login"),
            )
        self._token = token

    async def _login_soap(self) -> None:
        envelope = build_soap_envelope(
            "Login",
            {"username": self.config.username, "password": self._password, "domain": self.config.domain},
        )
        status, body = await self._transport(
            "POST",
            ApiRequestBuilder.SOAP_PATH,
            data=envelope,
            headers=self._soap_headers("Login"),
            phase="login",
        )
        if status in (401, 403):
            raise self._auth_error(status)
        rows, fault = parse_soap_response(body)
        session_id = rows[0].get("SessionId") if rows else None
        if fault is not None or status >= 400 or not session_id:
            raise AuthenticationError(
                "SOAP login did not return a session id",
                code=ErrorCodes.AUTH_FAILED,
                context=self._context(phase="login", fault=fault, status=status),
            )
        self._token = session_id

    def _soap_headers(self, action: str) -> Dict[str, str]:
        return {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": f'"{CM_NS}/{action}"',
        }

    def _auth_error(self, status: int) -> AuthenticationError:
        return AuthenticationError(
            f"{self.config.protocol.upper()} API rejected the credentials (HTTP {status})",
            code=ErrorCodes.AUTH_FAILED,
            context=self._context(status=status, username=self.config.username),
        )

    def _status_error(self, status: int, body: bytes, *, phase: str, path: str = "") -> CMConnectorException:
        snippet = body[:200].decode("utf-8", errors="replace") if body else ""
        context = self._context(status=status, phase=phase, path=path)
        if status in (408, 429) or status >= 500:
            return ConnectionError(
                f"API call failed with HTTP {status}: {snippet}",
                code=ErrorCodes.CONNECTION_FAILED,
                context=context,
            )
        return QueryError(
            f"API call rejected with HTTP {status}: {snippet}",
            code=ErrorCodes.QUERY_EXECUTION_FAILED,
            context=context,
        )

    async def _transport(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        phase: str = "execute",
    ) -> Tuple[int, bytes]:
        """Send one HTTP request and return ``(status, body)``.

        Raises:
            ConnectionError: On connection-level failures
            TimeoutError: If the request exceeds its timeout
        """
        if self._session is None:
            raise ConnectionError(
                f"Connection to {self.system_id} is not open",
                code=ErrorCodes.CONNECTION_CLOSED,
                context=self._context(),
            )
        request_headers = {**self._auth_headers(), **(headers or {})}
        effective_timeout = timeout or self.config.timeout
        try:
            async with self._session.request(
                method,
                f"{self._base_url}{path}",
                params={k: v for k, v in (params or {}).items() if v is not None} or None,
                json=json_body,
                data=data,
                headers=request_headers,
                timeout=aiohttp.ClientTimeout(total=effective_timeout),
            ) as response:
                return response.status, await response.read()
        except asyncio.TimeoutError as e:
            self._healthy = False
            raise TimeoutError(
                f"{method} {path} timed out after {effective_timeout}s",
                code=ErrorCodes.QUERY_TIMEOUT if phase == "execute" else ErrorCodes.CONNECTION_TIMEOUT,
                context=self._context(path=path, phase=phase, timeout=effective_timeout),
            ) from e
        except aiohttp.ClientError as e:
            self._healthy = False
            raise ConnectionError(
                f"{method} {path} failed: {e}",
                code=ErrorCodes.CONNECTION_FAILED,
                context=self._context(path=path, phase=phase),
            ) from e

    async def _send(self, request: ApiRequest, timeout: Optional[float]) -> Tuple[int, bytes]:
        if request.is_soap:
            return await self._transport(
                request.method,
                request.path,
                params=request.params,
                data=build_soap_envelope(request.soap_action or "", request.soap_fields, self._token),
                headers=self._soap_headers(request.soap_action or ""),
                timeout=timeout,
            )
        return await self._transport(
            request.method,
            request.path,
            params=request.params,
            json_body=request.json,
            timeout=timeout,
        )

    async def execute(self, request: ApiRequest, *, timeout: Optional[float] = None) -> QueryResult:
        """Execute a REST or SOAP request.

        Args:
            request: Request from this connection's builder
            timeout: Request timeout (defaults to the connect timeout)

        Returns:
            Rows normalized from the JSON or SOAP payload

        Raises:
            ConnectionError: On transport failures or HTTP 5xx
            TimeoutError: If the request exceeds its timeout
            AuthenticationError: If credentials are rejected after one re-login
            QueryError: On HTTP 404, other client errors, or SOAP faults
        """
        if not self.is_open:
            raise ConnectionError(
                f"Connection to {self.system_id} is not open",
                code=ErrorCodes.CONNECTION_CLOSED,
                context=self._context(),
            )

        start = time.perf_counter()
        try:
            status, body = await self._send(request, timeout)
            if status == 401 and self.config.api_key is None:
                self.logger.info("Session expired, re-authenticating")
                self._token = None
                await self._login()
                status, body = await self._send(request, timeout)
        except asyncio.CancelledError:
            self._healthy = False
            self.last_error = "cancelled"
            raise
        except CMConnectorException as e:
            self.last_error = e.message
            raise

        try:
            rows = self._parse(request, status, body)
        except CMConnectorException as e:
            self.last_error = e.message
            raise

        self.use_count += 1
        self.last_used = datetime.now()
        return QueryResult(
            rows=rows,
            execution_time=time.perf_counter() - start,
            source=f"{self.config.protocol}:{request.soap_action or request.path}",
        )

    def _parse(self, request: ApiRequest, status: int, body: bytes) -> List[Dict[str, Any]]:
        if status in (401, 403):
            raise self._auth_error(status)

        if request.is_soap:
            if status >= 400 and status != 500:
                raise self._status_error(status, body, phase="execute", path=request.soap_action or "")
            rows, fault = parse_soap_response(body)
            if fault is not None:
                raise QueryError(
                    f"SOAP action {request.soap_action} failed: {fault}",
                    code=ErrorCodes.QUERY_EXECUTION_FAILED,
                    context=self._context(action=request.soap_action, status=status),
                )
            if status >= 400:
                raise self._status_error(status, body, phase="execute", path=request.soap_action or "")
            return rows

        if status >= 400:
            raise self._status_error(status, body, phase="execute", path=request.path)
        if not body:
            return []
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise QueryError(
                f"Malformed JSON from {request.path}: {e}",
                code=ErrorCodes.QUERY_EXECUTION_FAILED,
                context=self._context(path=request.path),
            ) from e
        return normalize_json_rows(payload)

    async def health_check(self) -> bool:
        """Call the system information endpoint as a liveness probe."""
        if not self.is_open:
            return False
        try:
            await self.execute(self._query_builder.ping(), timeout=min(5.0, self.config.timeout))
        except CMConnectorException as e:
            self.logger.debug("Health probe failed", error=str(e))
            self._healthy = False
            return False
        self._healthy = True
        return True

    def get_health_status(self) -> Dict[str, Any]:
        status = super().get_health_status()
        status.update({
            "connection_id": self._connection_id,
            "system_id": self.system_id,
            "open": self.is_open,
            "healthy": self._healthy,
            "use_count": self.use_count,
            "last_error": self.last_error,
        })
        return status
