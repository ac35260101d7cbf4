"""
Gateway adapter for hosted checkout sessions.
Talks to the Stripe REST API (Checkout Sessions) through requests.
Designed so a fake gateway can be injected in tests.
"""
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import requests

logger = logging.getLogger(__name__)

# valida um id do tipo cs_*******
SESSION_ID_RE = re.compile(r"cs_[A-Za-z0-9]+")


def is_valid_session_id(session_id) -> bool:
    return isinstance(session_id, str) and SESSION_ID_RE.fullmatch(session_id) is not None


@dataclass
class CheckoutSession:
    """Sessão criada no gateway: id (cs_...) e URL hospedada para o pagador."""
    id: str
    url: str


class GatewayError(Exception):
    """Falha ao conversar com o gateway (HTTP >= 400, rede ou resposta inválida)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BaseGateway:
    def create_checkout_session(self, *, currency, product_name, unit_amount,
                                payment_method_types, payment_method_options,
                                success_url, cancel_url, metadata) -> CheckoutSession:
        raise NotImplementedError()

    def retrieve_checkout_session(self, session_id, expand: Sequence[str] = ("payment_intent",)) -> Dict:
        raise NotImplementedError()


def encode_form(data: Dict, prefix: str = "") -> Dict[str, str]:
    """Converte dicts/listas aninhados para a notação de colchetes do Stripe.

    {"a": {"b": 1}, "c": ["x"]} -> {"a[b]": "1", "c[0]": "x"}
    """
    encoded = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            encoded.update(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    encoded.update(encode_form(item, f"{name}[{i}]"))
                else:
                    encoded[f"{name}[{i}]"] = _form_value(item)
        else:
            encoded[name] = _form_value(value)
    return encoded


def _form_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class StripeGateway(BaseGateway):
    """Stripe Checkout Sessions (pagamento único).

    Uma única chamada por operação: nenhum adapter de retry é montado na sessão
    HTTP, para que uma sessão de checkout nunca seja criada em duplicidade.
    """

    API_BASE = "https://api.stripe.com/v1"

    def __init__(self, secret_key: str, timeout: float = 15.0, session: Optional[requests.Session] = None):
        if not secret_key:
            raise ValueError("secret_key é obrigatória para o StripeGateway")
        self.secret_key = secret_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _auth(self):
        # Basic Auth: chave como usuário, senha vazia
        return (self.secret_key, "")

    def _request(self, method: str, path: str, **kwargs) -> Dict:
        url = f"{self.API_BASE}{path}"
        try:
            resp = self.session.request(method, url, auth=self._auth(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise GatewayError(f"Falha de rede ao chamar o Stripe: {e}") from e

        if resp.status_code >= 400:
            detail = ""
            try:
                detail = (resp.json().get("error") or {}).get("message") or ""
            except ValueError:
                detail = resp.text[:200]
            raise GatewayError(f"HTTP {resp.status_code}: {detail}", status_code=resp.status_code)

        try:
            return resp.json()
        except ValueError as e:
            raise GatewayError("Resposta do Stripe não é JSON válido", status_code=resp.status_code) from e

    def create_checkout_session(self, *, currency, product_name, unit_amount,
                                payment_method_types, payment_method_options,
                                success_url, cancel_url, metadata) -> CheckoutSession:
        payload = {
            "mode": "payment",
            "payment_method_types": list(payment_method_types),
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": product_name},
                        "unit_amount": int(unit_amount),
                    },
                    "quantity": 1,
                }
            ],
            "payment_method_options": payment_method_options or {},
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        js = self._request("POST", "/checkout/sessions", data=encode_form(payload))
        if not js.get("id") or not js.get("url"):
            raise GatewayError("Sessão criada sem id/url na resposta do Stripe")
        return CheckoutSession(id=js["id"], url=js["url"])

    def retrieve_checkout_session(self, session_id, expand: Sequence[str] = ("payment_intent",)) -> Dict:
        if not is_valid_session_id(session_id):
            raise ValueError("id de sessão inválido")
        params = [("expand[]", field) for field in expand]
        return self._request("GET", f"/checkout/sessions/{session_id}", params=params)


def get_gateway(secret_key: Optional[str] = None, timeout: float = 15.0) -> Optional[BaseGateway]:
    """Retorna o gateway configurado ou None quando não há credencial.

    Sem chave, apenas o cartão (Stripe) fica desabilitado; o PIX offline continua.
    """
    if not secret_key:
        logger.warning("STRIPE_SECRET_KEY não definida: cartão via Stripe desabilitado. PIX offline continua funcionando.")
        return None
    return StripeGateway(secret_key, timeout=timeout)
