from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Protocol

import httpx

# Internal payment-method keys to gateway channel codes.
CHANNELS = {
    "qris": "QRIS",
    "qris_realtime": "QRISREALTIME",
    "shopeepay": "SHOPEEPAY",
    "gopay": "GOPAY",
    "dana": "DANA",
    "ovo": "OVO",
    "linkaja": "LINKAJA",
    "astrapay": "ASTRAPAY",
    "virgo": "VIRGO",
    "dana_realtime": "DANAREAL",
    "bri": "BRIVA",
    "bca": "BCAVA",
    "bni": "BNIVA",
    "mandiri": "MANDIRIVA",
    "permata": "PERMATAVA",
    "cimb": "CIMBVA",
    "danamon": "DANAMONVA",
    "bsi": "BSIVA",
    "alfamart": "ALFAMART",
    "indomaret": "INDOMARET",
}


class GatewayVerdict(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


_VERDICTS = {
    "paid": GatewayVerdict.SUCCESS,
    "success": GatewayVerdict.SUCCESS,
    "berhasil": GatewayVerdict.SUCCESS,
    "failed": GatewayVerdict.FAILED,
    "gagal": GatewayVerdict.FAILED,
    "expired": GatewayVerdict.EXPIRED,
    "kadaluarsa": GatewayVerdict.EXPIRED,
}


@dataclass(frozen=True)
class GatewayStatus:
    reference: str
    verdict: GatewayVerdict
    raw_status: str


class GatewayError(Exception):
    """Raised when the payment gateway cannot give an answer."""


def map_gateway_status(raw: str | None) -> GatewayVerdict:
    return _VERDICTS.get(str(raw or "").strip().lower(), GatewayVerdict.UNKNOWN)


def channel_code(key: str | None) -> str | None:
    if not key:
        return None
    return CHANNELS.get(key, key)


class GatewayClient(Protocol):
    def check_status(
        self, reference: str, amount: float | None = None, channel: str | None = None
    ) -> GatewayStatus: ...


class HTTPGatewayClient:
    def __init__(
        self,
        base_url: str,
        merchant_id: str,
        secret: str,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._merchant_id = merchant_id
        self._secret = secret
        self._client = client or httpx.Client(timeout=timeout)

    def check_status(
        self, reference: str, amount: float | None = None, channel: str | None = None
    ) -> GatewayStatus:
        if not self._merchant_id or not self._secret:
            raise GatewayError("Gateway credentials missing")

        params = {"merchant": self._merchant_id, "secret": self._secret, "ref_id": reference}
        if amount:
            params["nominal"] = _format_amount(amount)
        if channel:
            params["metode"] = channel_code(channel)

        try:
            response = self._client.get(f"{self._base_url}/order", params=params)
        except httpx.HTTPError as exc:
            raise GatewayError(f"Gateway unreachable for {reference}: {exc}") from exc

        if response.status_code >= 400:
            raise GatewayError(
                f"Status check failed for {reference} ({response.status_code}): {response.text}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError(f"Gateway sent invalid JSON for {reference}") from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        raw = data.get("status") if isinstance(data, dict) else None
        if not raw:
            # The envelope status only means the lookup itself worked.
            raise GatewayError(f"Gateway has no status for {reference}: {payload}")
        return GatewayStatus(reference=reference, verdict=map_gateway_status(raw), raw_status=str(raw))

    def close(self) -> None:
        self._client.close()


class MockGatewayClient:
    """Answers every status check with the same configured status."""

    def __init__(self, status: str = "pending"):
        self._status = status

    def check_status(
        self, reference: str, amount: float | None = None, channel: str | None = None
    ) -> GatewayStatus:
        return GatewayStatus(
            reference=reference,
            verdict=map_gateway_status(self._status),
            raw_status=self._status,
        )

    def close(self) -> None:
        return None


def _format_amount(amount: float) -> str:
    return str(int(amount)) if float(amount).is_integer() else str(amount)
