"""
KSeF HTTP client.

One class per protocol generation of the remote API. All of them expose the
same operations (get_challenge, authenticate, fetch_invoices_since,
check_connectivity, fetch_public_key); what differs is the endpoint layout,
the login request body and the session header.

Invariants worth knowing before touching this module:
- a Challenge is consumed by the authenticate() call that requested it and never reused;
- nothing here persists session tokens or logs secrets/ciphertexts;
- pages are returned in server order, without client-side dedup (the stores upsert);
- "no results" is detected from the structured exceptionCode, never from message text.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import requests

from core.exceptions import AuthError, ProtocolError, TransportError
from core.ksef_crypto import SCHEME_OAEP_SHA256, SCHEME_PKCS1V15, PublicKeyInput, encrypt_token
from core.ksef_models import (
    Challenge,
    Environment,
    InvoiceHeader,
    ProtocolVersion,
    format_timestamp,
    to_decimal,
)

LOGGER = logging.getLogger(__name__)


DEFAULT_TIMEOUT_SEC = 30
MAX_TIMEOUT_SEC = 120
DEFAULT_PAGE_SIZE = 100
MAX_PAGES = 10000

NO_RESULTS_CODE = 21104

# PKCS#1 v1.5 is what the KSeF login expects; OAEP only when the operator opts in.
TOKEN_PADDING_SCHEMES = (SCHEME_PKCS1V15, SCHEME_OAEP_SHA256)

# The KSeF edge has rejected bare API-client user agents in the past.
DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "application/json",
    "Accept-Language": "pl-PL,pl;q=0.9,en;q=0.8",
}


def _service_details(payload: Any) -> List[Tuple[Optional[int], str]]:
    """Return (exceptionCode, description) pairs from a KSeF error envelope."""
    if not isinstance(payload, dict):
        return []
    out: List[Tuple[Optional[int], str]] = []
    exc = payload.get("exception")
    if isinstance(exc, dict):
        for item in exc.get("exceptionDetailList") or []:
            if not isinstance(item, dict):
                continue
            code = item.get("exceptionCode")
            try:
                code = int(code) if code is not None else None
            except (TypeError, ValueError):
                code = None
            desc = str(item.get("exceptionDescription") or "")
            details = item.get("details")
            if isinstance(details, list) and details:
                desc = f"{desc} ({'; '.join(str(d) for d in details)})" if desc else "; ".join(str(d) for d in details)
            out.append((code, desc))
    status = payload.get("status")
    if isinstance(status, dict) and status.get("code") is not None:
        try:
            code = int(status["code"])
        except (TypeError, ValueError):
            code = None
        out.append((code, str(status.get("description") or "")))
    return out


def _dig(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _first_text(obj: Dict[str, Any], paths: Iterable[Tuple[str, ...]]) -> str:
    for path in paths:
        v = _dig(obj, *path)
        if v is not None and not isinstance(v, (dict, list)) and str(v).strip():
            return str(v).strip()
    return ""


class KsefClient(ABC):
    """
    Base client: transport, error normalization and pagination.

    Usage:
        client = create_client(ProtocolVersion.V2, Environment.TEST)
        token = client.authenticate(nip, secret, public_key_pem)
        invoices = client.fetch_invoices_since(token, last_synced_at, now)
    """

    protocol_version: ProtocolVersion
    base_urls: Dict[Environment, str]
    public_credentials_path: str
    default_subject_type = ""

    def __init__(
        self,
        environment: Environment,
        *,
        timeout_sec: int = DEFAULT_TIMEOUT_SEC,
        proxy: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        subject_type: Optional[str] = None,
        padding_scheme: str = SCHEME_PKCS1V15,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not 0 < timeout_sec <= MAX_TIMEOUT_SEC:
            raise ValueError(f"timeout_sec must be in 1..{MAX_TIMEOUT_SEC}, got {timeout_sec}")
        if page_size <= 0:
            raise ValueError(f"page_size must be positive, got {page_size}")
        if padding_scheme not in TOKEN_PADDING_SCHEMES:
            raise ValueError(f"padding_scheme must be one of {TOKEN_PADDING_SCHEMES}, got {padding_scheme!r}")
        self.environment = environment
        self.base_url = self.base_urls[environment].rstrip("/")
        self.timeout_sec = timeout_sec
        self.page_size = page_size
        self.subject_type = subject_type or self.default_subject_type
        self.padding_scheme = padding_scheme
        self.session = session if session is not None else requests.Session()
        self.session.headers.update(dict(DEFAULT_HEADERS))
        if headers:
            self.session.headers.update(dict(headers))
        if proxy:
            self.session.proxies.update({"http": proxy, "https": proxy})

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        auth_stage: bool = False,
    ) -> Dict[str, Any]:
        """
        Perform one HTTP call and return the decoded JSON body.

        Raises:
            TransportError: network, TLS or timeout failure.
            AuthError: any 4xx while auth_stage is set (login, authorisation polling, redeem).
            ProtocolError: every other error status, and non-JSON bodies. An expired
                session during a query is a ProtocolError too: the next cycle logs in again.
        """
        url = f"{self.base_url}{path}"
        LOGGER.debug("%s %s params=%s", method, path, params or {})
        try:
            r = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                data=data,
                headers=headers,
                timeout=self.timeout_sec,
            )
        except requests.exceptions.Timeout as exc:
            raise TransportError(f"Timeout calling {method} {path} after {self.timeout_sec}s") from exc
        except requests.exceptions.SSLError as exc:
            raise TransportError(f"TLS error calling {method} {path}: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Connection error calling {method} {path}: {exc}") from exc

        LOGGER.debug("%s %s -> HTTP %s", method, path, r.status_code)
        if r.status_code >= 400:
            raise self._error_from_response(r, method, path, auth_stage=auth_stage)

        if not r.content:
            return {}
        try:
            body = r.json()
        except ValueError as exc:
            raise ProtocolError(
                f"{method} {path} did not return JSON. content-type={r.headers.get('Content-Type')}",
                code=ProtocolError.INVALID_RESPONSE,
                status_code=r.status_code,
            ) from exc
        if not isinstance(body, dict):
            return {"items": body}
        return body

    def _error_from_response(self, r: requests.Response, method: str, path: str, *, auth_stage: bool) -> Exception:
        try:
            payload = r.json()
        except ValueError:
            payload = None
        details = _service_details(payload)
        codes = [code for code, _ in details if code is not None]
        reason = "; ".join(desc for _, desc in details if desc) or (r.text or "")[:300]
        service_code = codes[0] if codes else None

        if NO_RESULTS_CODE in codes:
            return ProtocolError(
                f"{method} {path}: no results",
                code=ProtocolError.NO_RESULTS,
                status_code=r.status_code,
                service_code=NO_RESULTS_CODE,
            )
        if auth_stage and r.status_code < 500:
            return AuthError(
                f"{method} {path} rejected (HTTP {r.status_code}): {reason}",
                status_code=r.status_code,
                reason=reason,
            )
        return ProtocolError(
            f"{method} {path} failed HTTP {r.status_code}: {reason}",
            code=ProtocolError.SERVER_ERROR,
            status_code=r.status_code,
            service_code=service_code,
        )

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def get_challenge(self, tax_id: str) -> Challenge:
        data = self._request_challenge(tax_id)
        timestamp = self._challenge_timestamp(data)
        challenge = data.get("challenge")
        if not timestamp or not challenge:
            raise ProtocolError(
                "Invalid challenge response: timestamp and challenge are required",
                code=ProtocolError.INVALID_RESPONSE,
            )
        LOGGER.info("Challenge received for %s: %s...", tax_id, str(challenge)[:12])
        return Challenge(issued_at=str(timestamp), challenge_value=str(challenge))

    def authenticate(self, tax_id: str, secret: str, public_key: Optional[PublicKeyInput] = None) -> str:
        """Challenge -> encrypt -> login. Returns the session token (never persisted)."""
        if public_key is None:
            public_key = self.fetch_public_key()
        challenge = self.get_challenge(tax_id)
        encrypted = encrypt_token(secret, challenge.issued_at, public_key, scheme=self.padding_scheme)
        token = self._login(tax_id, challenge, encrypted)
        if not token:
            raise ProtocolError("Login response carries no session token", code=ProtocolError.INVALID_RESPONSE)
        LOGGER.info("Session opened for %s (%s, %s)", tax_id, self.protocol_version.value, self.environment.value)
        return token

    def fetch_invoices_since(self, session_token: str, date_from: dt.datetime, date_to: dt.datetime) -> List[InvoiceHeader]:
        """
        All invoice headers acquired in [date_from, date_to), across all pages.

        Any page failure fails the whole call; partial results are never returned.
        """
        invoices: List[InvoiceHeader] = []
        seen_page_sigs: set = set()
        page = 0
        while True:
            try:
                items, has_more = self._query_page(session_token, date_from, date_to, page)
            except ProtocolError as exc:
                if exc.code == ProtocolError.NO_RESULTS:
                    LOGGER.info("Page %s: no results (stop).", page)
                    break
                raise

            if not items:
                break

            parsed = [self._parse_invoice(it) for it in items]
            sig = (parsed[0].reference_number, parsed[-1].reference_number, len(parsed))
            if sig in seen_page_sigs:
                raise ProtocolError(
                    f"Page {page} repeats an earlier page (pagination loop suspected). sig={sig}",
                    code=ProtocolError.INVALID_RESPONSE,
                )
            seen_page_sigs.add(sig)

            invoices.extend(parsed)
            LOGGER.info("Page %s: received %s invoices (total %s).", page, len(parsed), len(invoices))

            if not has_more:
                break
            page += 1
            if page >= MAX_PAGES:
                raise ProtocolError("Aborting: too many pages (possible pagination loop).")
        return invoices

    def check_connectivity(self) -> bool:
        try:
            self._request("GET", self.public_credentials_path)
            return True
        except Exception as exc:
            LOGGER.warning("Connectivity check failed for %s: %s", self.base_url, exc)
            return False

    def close(self) -> None:
        self.session.close()

    def fetch_public_key(self) -> str:
        """Token-encryption key of this environment, as PEM or base64 DER text."""
        data = self._request("GET", self.public_credentials_path)
        key = self._extract_public_key(data)
        if not key:
            raise ProtocolError("No public key in public credentials response", code=ProtocolError.INVALID_RESPONSE)
        return key

    # ------------------------------------------------------------------
    # protocol-specific
    # ------------------------------------------------------------------

    @abstractmethod
    def _request_challenge(self, tax_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def _challenge_timestamp(self, data: Dict[str, Any]) -> Any:
        ...

    @abstractmethod
    def _login(self, tax_id: str, challenge: Challenge, encrypted_token: str) -> str:
        ...

    @abstractmethod
    def _query_page(
        self, session_token: str, date_from: dt.datetime, date_to: dt.datetime, page: int
    ) -> Tuple[List[Dict[str, Any]], bool]:
        ...

    @abstractmethod
    def _parse_invoice(self, item: Dict[str, Any]) -> InvoiceHeader:
        ...

    @abstractmethod
    def _extract_public_key(self, data: Dict[str, Any]) -> str:
        ...


# =============================================================================
# Legacy "online" API (2021/10 schemas)
# =============================================================================

NS_AUTH_REQUEST = "http://ksef.mf.gov.pl/schema/gtw/svc/online/auth/request/2021/10/01/0001"
NS_TYPES = "http://ksef.mf.gov.pl/schema/gtw/svc/types/2021/10/01/0001"
NS_XSI = "http://www.w3.org/2001/XMLSchema-instance"

ET.register_namespace("auth", NS_AUTH_REQUEST)
ET.register_namespace("types", NS_TYPES)
ET.register_namespace("xsi", NS_XSI)


def build_init_session_token_xml(tax_id: str, challenge: str, encrypted_token: str) -> bytes:
    """InitSessionTokenRequest document for /online/Session/InitToken."""
    def t(tag: str) -> str:
        return f"{{{NS_TYPES}}}{tag}"

    root = ET.Element(f"{{{NS_AUTH_REQUEST}}}InitSessionTokenRequest")
    context = ET.SubElement(root, f"{{{NS_AUTH_REQUEST}}}Context")
    ET.SubElement(context, t("Challenge")).text = challenge
    ident = ET.SubElement(context, t("Identifier"), {f"{{{NS_XSI}}}type": "types:SubjectIdentifierByCompanyType"})
    ET.SubElement(ident, t("Identifier")).text = tax_id
    doc_type = ET.SubElement(context, t("DocumentType"))
    ET.SubElement(doc_type, t("Service")).text = "KSeF"
    form_code = ET.SubElement(doc_type, t("FormCode"), {"systemCode": "FA (2)", "schemaVersion": "1-0E"})
    form_code.text = "FA"
    ET.SubElement(context, t("Token")).text = encrypted_token
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


class KsefClientV1(KsefClient):
    protocol_version = ProtocolVersion.V1
    base_urls = {
        Environment.TEST: "https://ksef-test.mf.gov.pl/api",
        Environment.DEMO: "https://ksef-demo.mf.gov.pl/api",
        Environment.PRODUCTION: "https://ksef.mf.gov.pl/api",
    }
    public_credentials_path = "/online/Definition/PublicCredentials"
    default_subject_type = "subject2"
    session_header = "SessionToken"

    def _request_challenge(self, tax_id: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/online/Session/AuthorisationChallenge",
            params={"type": "serial", "identifier": tax_id},
            json_body={},
        )

    def _challenge_timestamp(self, data: Dict[str, Any]) -> Any:
        return data.get("timestamp")

    def _login(self, tax_id: str, challenge: Challenge, encrypted_token: str) -> str:
        body = build_init_session_token_xml(tax_id, challenge.challenge_value, encrypted_token)
        data = self._request(
            "POST",
            "/online/Session/InitToken",
            data=body,
            headers={"Content-Type": "application/octet-stream"},
            auth_stage=True,
        )
        return _first_text(data, [("sessionToken", "token")])

    def _query_page(self, session_token, date_from, date_to, page):
        payload = {
            "queryCriteria": {
                "subjectType": self.subject_type,
                "type": "detail",
                "acquisitionTimestampThresholdFrom": format_timestamp(date_from),
                "acquisitionTimestampThresholdTo": format_timestamp(date_to),
            }
        }
        data = self._request(
            "POST",
            "/online/Query/Invoice/Sync",
            params={"PageSize": self.page_size, "PageOffset": page},
            json_body=payload,
            headers={self.session_header: session_token, "Content-Type": "application/json"},
        )
        items = data.get("invoiceHeaderList") or []
        if not isinstance(items, list):
            raise ProtocolError("invoiceHeaderList is not a list", code=ProtocolError.INVALID_RESPONSE)
        total = data.get("numberOfElements")
        has_more = len(items) >= self.page_size
        if isinstance(total, int) and (page + 1) * self.page_size >= total:
            has_more = False
        return items, has_more

    def _parse_invoice(self, item: Dict[str, Any]) -> InvoiceHeader:
        ref = _first_text(item, [("ksefReferenceNumber",)])
        if not ref:
            raise ProtocolError("Invoice header without ksefReferenceNumber", code=ProtocolError.INVALID_RESPONSE)
        return InvoiceHeader(
            reference_number=ref,
            invoice_number=_first_text(item, [("invoiceReferenceNumber",)]),
            issuer_tax_id=_first_text(item, [
                ("subjectBy", "issuedByIdentifier", "identifier"),
                ("subjectBy", "issuer", "identifier"),
            ]),
            gross_amount=to_decimal(item.get("gross")),
            currency=_first_text(item, [("currency",)]),
            invoice_date=_first_text(item, [("invoicingDate",)]),
            acquisition_timestamp=_first_text(item, [("acquisitionTimestamp",)]),
            raw=item,
        )

    def _extract_public_key(self, data: Dict[str, Any]) -> str:
        for cred in data.get("publicCredentialsList") or []:
            if not isinstance(cred, dict):
                continue
            for entry in cred.get("publicKeys") or [cred]:
                key = entry.get("publicKey") if isinstance(entry, dict) else None
                if isinstance(key, dict):
                    key = key.get("publicKey") or key.get("value") or key.get("pem")
                if isinstance(key, str) and key.strip():
                    return key.strip()
        return ""


# =============================================================================
# v2 API
# =============================================================================

class KsefClientV2(KsefClient):
    protocol_version = ProtocolVersion.V2
    base_urls = {
        Environment.TEST: "https://api-test.ksef.mf.gov.pl/v2",
        Environment.DEMO: "https://api-demo.ksef.mf.gov.pl/v2",
        Environment.PRODUCTION: "https://api.ksef.mf.gov.pl/v2",
    }
    public_credentials_path = "/security/public-key-certificates"
    default_subject_type = "Subject2"

    AUTH_IN_PROGRESS = 100
    AUTH_OK = 200

    def __init__(
        self,
        environment: Environment,
        *,
        auth_poll_attempts: int = 30,
        auth_poll_interval_sec: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs: Any,
    ) -> None:
        super().__init__(environment, **kwargs)
        self.auth_poll_attempts = auth_poll_attempts
        self.auth_poll_interval_sec = auth_poll_interval_sec
        self._sleep = sleep

    @staticmethod
    def _bearer(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def _request_challenge(self, tax_id: str) -> Dict[str, Any]:
        return self._request("POST", "/auth/challenge", json_body={})

    def _challenge_timestamp(self, data: Dict[str, Any]) -> Any:
        ts = data.get("timestampMs")
        return ts if ts is not None else data.get("timestamp")

    def _login(self, tax_id: str, challenge: Challenge, encrypted_token: str) -> str:
        body = {
            "challenge": challenge.challenge_value,
            "contextIdentifier": {"type": "Nip", "value": tax_id},
            "encryptedToken": encrypted_token,
        }
        data = self._request("POST", "/auth/ksef-token", json_body=body, auth_stage=True)
        auth_token = _first_text(data, [("authenticationToken", "token")])
        reference = _first_text(data, [("referenceNumber",)])
        if not auth_token or not reference:
            raise ProtocolError(
                "Login response lacks authenticationToken or referenceNumber",
                code=ProtocolError.INVALID_RESPONSE,
            )

        self._wait_for_authorisation(reference, auth_token)

        redeemed = self._request("POST", "/auth/token/redeem", headers=self._bearer(auth_token), auth_stage=True)
        return _first_text(redeemed, [("accessToken", "token"), ("accessToken",)])

    def _wait_for_authorisation(self, reference: str, auth_token: str) -> None:
        for attempt in range(1, self.auth_poll_attempts + 1):
            data = self._request("GET", f"/auth/{reference}", headers=self._bearer(auth_token), auth_stage=True)
            status = data.get("status") or {}
            code = status.get("code")
            if code == self.AUTH_OK:
                return
            if code == self.AUTH_IN_PROGRESS:
                LOGGER.info("Authorisation in progress (attempt %s/%s)...", attempt, self.auth_poll_attempts)
                self._sleep(self.auth_poll_interval_sec)
                continue
            reason = str(status.get("description") or "")
            details = status.get("details")
            if isinstance(details, list) and details:
                reason = f"{reason} ({'; '.join(str(d) for d in details)})"
            raise AuthError(f"Authorisation refused: code {code} {reason}".strip(), reason=reason)
        raise AuthError(f"Authorisation still pending after {self.auth_poll_attempts} attempts")

    def _query_page(self, session_token, date_from, date_to, page):
        body = {
            "subjectType": self.subject_type,
            "dateRange": {
                "dateType": "PermanentStorage",
                "from": format_timestamp(date_from),
                "to": format_timestamp(date_to),
            },
        }
        data = self._request(
            "POST",
            "/invoices/query/metadata",
            params={"pageSize": self.page_size, "pageOffset": page},
            json_body=body,
            headers=self._bearer(session_token),
        )
        items = data.get("invoices") or []
        if not isinstance(items, list):
            raise ProtocolError("invoices is not a list", code=ProtocolError.INVALID_RESPONSE)
        if data.get("isTruncated"):
            raise ProtocolError(
                "Query result truncated by the server; narrow the sync window",
                code=ProtocolError.INVALID_RESPONSE,
            )
        return items, bool(data.get("hasMore"))

    def _parse_invoice(self, item: Dict[str, Any]) -> InvoiceHeader:
        ref = _first_text(item, [("ksefNumber",), ("ksefReferenceNumber",)])
        if not ref:
            raise ProtocolError("Invoice metadata without ksefNumber", code=ProtocolError.INVALID_RESPONSE)
        return InvoiceHeader(
            reference_number=ref,
            invoice_number=_first_text(item, [("invoiceNumber",)]),
            issuer_tax_id=_first_text(item, [("seller", "nip"), ("seller", "identifier", "value")]),
            gross_amount=to_decimal(item.get("grossAmount")),
            currency=_first_text(item, [("currency",)]),
            invoice_date=_first_text(item, [("issueDate",), ("invoicingDate",)]),
            acquisition_timestamp=_first_text(item, [("permanentStorageDate",), ("acquisitionDate",)]),
            raw=item,
        )

    def _extract_public_key(self, data: Dict[str, Any]) -> str:
        certs = data.get("items") if "items" in data else data.get("certificates")
        if not isinstance(certs, list):
            return ""
        fallback = ""
        for cert in certs:
            if not isinstance(cert, dict):
                continue
            material = cert.get("certificate") or cert.get("publicKey") or ""
            usage = cert.get("usage") or []
            if isinstance(usage, str):
                usage = [usage]
            if material and "KsefTokenEncryption" in usage:
                return material
            if material and not fallback:
                fallback = material
        return fallback


_CLIENTS = {
    ProtocolVersion.V1: KsefClientV1,
    ProtocolVersion.V2: KsefClientV2,
}


def create_client(protocol_version: ProtocolVersion, environment: Environment, **kwargs: Any) -> KsefClient:
    """Instantiate the client class registered for ``protocol_version``."""
    return _CLIENTS[protocol_version](environment, **kwargs)
