# pagamentos.py
"""
Regras de pagamento das doações: normalização do pedido, mapeamento dos
métodos aceitos pelo Stripe, URLs de retorno, tradução do status da sessão
e geração local do QR Code do PIX offline.
"""

import base64
import io
import logging
import math
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional, Tuple

import qrcode
from PIL import Image

from pagamentos_gateway import BaseGateway, is_valid_session_id

logger = logging.getLogger(__name__)

DEFAULT_FRONTEND_URL = 'http://localhost:4242'
CURRENCY = 'brl'
PRODUCT_NAME = 'Doação • Projeto Lar Carioca'
CHECKOUT_METADATA = {'origem': 'site', 'projeto': 'LarCarioca'}
PIX_EXPIRES_AFTER_SECONDS = 1800  # 30 minutos

BRCODE_MIN_LENGTH = 20
QR_DEFAULT_SIZE = 220
QR_MAX_SIZE = 2048  # teto de largura por requisição; valores acima são reduzidos a ele
QR_MARGIN = 1
QR_FALLBACK_SCALE = 4  # pixels por módulo quando a largura pedida não comporta a grade

_ABSOLUTE_URL_RE = re.compile(r'^https?://', re.IGNORECASE)


# ----------------------------------------------------------------------
# Erros
# ----------------------------------------------------------------------

class PagamentoError(Exception):
    """Erro com mensagem segura para o cliente e status HTTP associado."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PagamentoError):
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ServiceUnavailable(PagamentoError):
    status_code = 503

    def __init__(self, message: str = 'Stripe não configurado'):
        super().__init__(message)


class UpstreamFailure(PagamentoError):
    status_code = 500


class QRCodeError(PagamentoError):
    status_code = 500

    def __init__(self, message: str = 'Falha ao gerar QR Code'):
        super().__init__(message)


# ----------------------------------------------------------------------
# Tipos
# ----------------------------------------------------------------------

class PaymentMethod(str, Enum):
    CARD = 'card'
    PIX = 'pix'
    ANY = 'any'

    @classmethod
    def parse(cls, value) -> 'PaymentMethod':
        # Ausente => cartão; qualquer valor fora de {card, pix} => ambos.
        if value is None:
            return cls.CARD
        if value == cls.CARD.value:
            return cls.CARD
        if value == cls.PIX.value:
            return cls.PIX
        return cls.ANY


@dataclass
class PaymentRequest:
    amount: Decimal
    method: PaymentMethod = PaymentMethod.CARD
    return_base: Optional[str] = None

    @property
    def unit_amount(self) -> int:
        return to_minor_units(self.amount)


@dataclass
class MethodConfig:
    payment_method_types: List[str]
    payment_method_options: Dict[str, Dict] = field(default_factory=dict)


# ----------------------------------------------------------------------
# URLs de retorno (success/cancel)
# ----------------------------------------------------------------------

def _strip_trailing_slashes(value) -> str:
    return str(value).rstrip('/')


def resolve_return_base(explicit_base=None, origin=None, fallback=DEFAULT_FRONTEND_URL) -> str:
    """
    Base de retorno: returnBase explícito, depois o Origin do navegador, depois o fallback.
    Nunca falha: entrada que não seja uma URL http(s) absoluta cai no fallback.
    """
    raw = explicit_base or origin or fallback
    trimmed = _strip_trailing_slashes(raw)
    if not _ABSOLUTE_URL_RE.match(trimmed):
        return _strip_trailing_slashes(fallback)
    return trimmed


def build_return_urls(base: str) -> Tuple[str, str]:
    # {CHECKOUT_SESSION_ID} é substituído pelo próprio Stripe no redirecionamento
    success_url = f"{base}/sucesso.html?session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = f"{base}/cancelado.html"
    return success_url, cancel_url


# ----------------------------------------------------------------------
# Normalização do pedido
# ----------------------------------------------------------------------

def to_minor_units(amount: Decimal) -> int:
    """Converte reais para centavos: round(amount * 100), meio para cima."""
    return int((amount * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _parse_amount(raw) -> Decimal:
    if isinstance(raw, bool):
        raise ValueError('booleano não é valor monetário')
    if isinstance(raw, (int, Decimal)):
        return Decimal(raw)
    if isinstance(raw, float):
        # str() evita carregar o erro binário do float (10.1 -> Decimal('10.1'))
        return Decimal(str(raw))
    if isinstance(raw, str):
        return Decimal(raw.strip())
    raise TypeError(f'tipo não numérico: {type(raw).__name__}')


def normalize_checkout_request(body) -> PaymentRequest:
    if not isinstance(body, dict):
        body = {}

    raw_amount = body.get('amount')
    if raw_amount is None:
        raise ValidationError('amount é obrigatório', field='amount')

    try:
        amount = _parse_amount(raw_amount)
        if not amount.is_finite() or amount <= 0:
            raise ValueError('amount fora do intervalo')
        to_minor_units(amount)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError('amount inválido', field='amount')

    return PaymentRequest(
        amount=amount,
        method=PaymentMethod.parse(body.get('method')),
        return_base=body.get('returnBase'),
    )


# ----------------------------------------------------------------------
# Métodos de pagamento
# ----------------------------------------------------------------------

def map_payment_methods(method: PaymentMethod) -> MethodConfig:
    pix_options = {'pix': {'expires_after_seconds': PIX_EXPIRES_AFTER_SECONDS}}
    if method is PaymentMethod.CARD:
        return MethodConfig(['card'])
    if method is PaymentMethod.PIX:
        return MethodConfig(['pix'], pix_options)
    return MethodConfig(['card', 'pix'], pix_options)


# ----------------------------------------------------------------------
# Status da sessão
# ----------------------------------------------------------------------

def translate_session_status(session: Dict) -> Dict:
    """Reduz a sessão do Stripe ao payload público; não interpreta o status."""
    payload = {
        'payment_status': session.get('payment_status'),  # 'paid' quando OK
        'amount_total': session.get('amount_total'),      # em centavos
        'currency': session.get('currency'),              # 'brl'
    }
    intent = session.get('payment_intent')
    # Sem expand o Stripe devolve só o id (string) do payment_intent
    if isinstance(intent, dict) and intent.get('status') is not None:
        payload['payment_intent_status'] = intent['status']
    return payload


# ----------------------------------------------------------------------
# Orquestração das sessões de checkout
# ----------------------------------------------------------------------

def create_checkout_session(gateway: Optional[BaseGateway], body, origin: Optional[str] = None,
                            fallback_base: str = DEFAULT_FRONTEND_URL) -> Dict:
    if gateway is None:
        raise ServiceUnavailable()

    pedido = normalize_checkout_request(body)
    methods = map_payment_methods(pedido.method)
    base = resolve_return_base(pedido.return_base, origin, fallback_base)
    success_url, cancel_url = build_return_urls(base)

    try:
        session = gateway.create_checkout_session(
            currency=CURRENCY,
            product_name=PRODUCT_NAME,
            unit_amount=pedido.unit_amount,
            payment_method_types=methods.payment_method_types,
            payment_method_options=methods.payment_method_options,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=dict(CHECKOUT_METADATA),
        )
    except Exception as e:
        logger.error(f"Erro ao criar sessão: {e}")
        raise UpstreamFailure('Falha ao criar sessão de pagamento') from e

    logger.info(f"Sessão de checkout criada. ID: {session.id}. Valor (centavos): {pedido.unit_amount}. Métodos: {methods.payment_method_types}")
    return {'url': session.url}


def get_session_status(gateway: Optional[BaseGateway], session_id) -> Dict:
    if gateway is None:
        raise ServiceUnavailable()

    if not is_valid_session_id(session_id):
        raise ValidationError('id inválido', field='id')

    try:
        session = gateway.retrieve_checkout_session(session_id, expand=('payment_intent',))
    except Exception as e:
        logger.error(f"Falha ao consultar sessão {session_id}: {e}")
        raise UpstreamFailure('Falha ao consultar sessão') from e

    return translate_session_status(session)


# ----------------------------------------------------------------------
# PIX offline (QR gerado localmente)
# ----------------------------------------------------------------------

def resolve_qr_size(size) -> int:
    """Largura em pixels; ausente, não numérica ou <= 0 vira o padrão (220)."""
    if isinstance(size, bool):
        return QR_DEFAULT_SIZE
    try:
        value = float(size)
    except (TypeError, ValueError):
        return QR_DEFAULT_SIZE
    if not math.isfinite(value) or value < 1:
        return QR_DEFAULT_SIZE
    return min(int(value), QR_MAX_SIZE)


def render_pix_qrcode(brcode, size=QR_DEFAULT_SIZE) -> str:
    """
    Gera o QR Code do BR Code informado e retorna um data URL PNG.
    O conteúdo do BR Code é opaco: só exigimos uma string com o tamanho mínimo.
    """
    if not brcode or not isinstance(brcode, str) or len(brcode) < BRCODE_MIN_LENGTH:
        raise ValidationError('brcode inválido', field='brcode')

    width = resolve_qr_size(size)
    try:
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            border=QR_MARGIN,
            box_size=1,
        )
        qr.add_data(brcode)
        qr.make(fit=True)
        grid = qr.modules_count + 2 * QR_MARGIN
        # Nunca menos de 1 pixel por módulo: largura menor que a grade usa a escala padrão
        fits = width >= grid
        qr.box_size = width // grid if fits else QR_FALLBACK_SCALE
        img = qr.make_image(fill_color="black", back_color="white").get_image()
        if fits and img.size != (width, width):
            img = img.resize((width, width), Image.Resampling.NEAREST)

        buffered = io.BytesIO()
        img.save(buffered, format="PNG")
    except Exception as e:
        logger.error(f"Erro ao gerar QR: {e}")
        raise QRCodeError() from e

    qr_b64 = base64.b64encode(buffered.getvalue()).decode('ascii')
    return f"data:image/png;base64,{qr_b64}"
