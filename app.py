import os
import logging
from datetime import datetime, timezone

from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_talisman import Talisman

from pagamentos import (
    DEFAULT_FRONTEND_URL, PagamentoError,
    create_checkout_session, get_session_status, render_pix_qrcode,
)
from pagamentos_gateway import get_gateway

logger = logging.getLogger(__name__)

PUBLIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'public')

# ----------------------------------------------------------------------
# 1. CONFIGURAÇÃO E LOGGING
# ----------------------------------------------------------------------

def load_config():
    """Lê o ambiente (.env incluído) uma única vez, na criação da aplicação."""
    load_dotenv()
    return {
        'STRIPE_SECRET_KEY': os.getenv('STRIPE_SECRET_KEY') or None,
        'PORT': int(os.getenv('PORT', '4242')),
        'FRONTEND_URL': os.getenv('FRONTEND_URL', DEFAULT_FRONTEND_URL),
        'ALLOWED_ORIGINS': [o.strip() for o in os.getenv('ALLOWED_ORIGINS', '').split(',') if o.strip()],
        'FORCE_HTTPS': os.getenv('FORCE_HTTPS', 'false').lower() == 'true',
        'STRICT_HSTS': os.getenv('STRICT_HSTS', 'true').lower() == 'true',
        'LOG_FILE': os.getenv('LOG_FILE', 'pagamentos.log'),
        'HTTP_TIMEOUT_SECONDS': float(os.getenv('HTTP_TIMEOUT_SECONDS', '15')),
        'RATELIMIT_STORAGE_URI': os.getenv('RATELIMIT_STORAGE_URI', 'memory://'),
        'RATELIMIT_ENABLED': os.getenv('RATELIMIT_ENABLED', 'true').lower() == 'true',
    }


def configure_logging(log_file=None):
    handlers = [logging.StreamHandler()]  # Mostra logs no console (terminal)
    if log_file:
        handlers.append(logging.FileHandler(log_file))  # Grava logs em arquivo para auditoria
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def sanitize_for_log(value, maxlen: int = 120) -> str:
    s = str(value)
    s = s.replace('\n', '\\n').replace('\r', '\\r').replace('\t', ' ')
    if len(s) > maxlen:
        return s[:maxlen] + '...'
    return s


# Rate limiting por IP; storage e habilitação vêm do app.config (RATELIMIT_*)
limiter = Limiter(key_func=get_remote_address)

CSP_POLICY = {
    'default-src': ["'self'"],
    'script-src': ["'self'"],
    'style-src': ["'self'", "'unsafe-inline'"],
    'img-src': ["'self'", 'data:'],
    'connect-src': ["'self'"],
    'form-action': ["'self'", 'https://checkout.stripe.com'],
}

# ----------------------------------------------------------------------
# 2. ROTAS
# ----------------------------------------------------------------------

bp = Blueprint('doacoes', __name__)


def _gateway():
    return current_app.extensions.get('payment_gateway')


def _error(message, status):
    return jsonify({'error': message}), status


@bp.route('/')
def index():
    return current_app.send_static_file('index.html')


@bp.route('/health')
def health():
    return jsonify({'ok': True, 'time': datetime.now(timezone.utc).isoformat()})


# ========== Cartão/PIX (Stripe Checkout) ==========
@bp.route('/create-checkout-session', methods=['POST'])
@limiter.limit("20 per minute")
def create_checkout():
    body = request.get_json(silent=True)
    try:
        result = create_checkout_session(
            _gateway(),
            body,
            origin=request.headers.get('Origin'),
            fallback_base=current_app.config['FRONTEND_URL'],
        )
    except PagamentoError as e:
        if e.status_code == 400:
            raw_amount = body.get('amount') if isinstance(body, dict) else None
            logger.warning(f"Pedido de checkout rejeitado: {e.message}. Valor: {sanitize_for_log(raw_amount)}")
        return _error(e.message, e.status_code)
    except Exception:
        logger.exception("Erro inesperado ao criar sessão de pagamento")
        return _error('Falha ao criar sessão de pagamento', 500)
    return jsonify(result)


# ========== Confirmação de sessão (Stripe) ==========
# GET /checkout-session/<id> -> retorna o status real da sessão do Checkout
@bp.route('/checkout-session/<session_id>', methods=['GET'])
@limiter.limit("60 per minute")
def checkout_session_status(session_id):
    try:
        result = get_session_status(_gateway(), session_id)
    except PagamentoError as e:
        if e.status_code == 400:
            logger.warning(f"Consulta de sessão com id inválido: {sanitize_for_log(session_id)}")
        return _error(e.message, e.status_code)
    except Exception:
        logger.exception("Erro inesperado ao consultar sessão")
        return _error('Falha ao consultar sessão', 500)
    return jsonify(result)


# ========== PIX Offline (QR gerado localmente) ==========
@bp.route('/pix/qrcode', methods=['POST'])
@limiter.limit("30 per minute")
def pix_qrcode():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    try:
        data_url = render_pix_qrcode(body.get('brcode'), body.get('size'))
    except PagamentoError as e:
        return _error(e.message, e.status_code)
    except Exception:
        logger.exception("Erro inesperado ao gerar QR")
        return _error('Falha ao gerar QR Code', 500)
    return jsonify({'dataUrl': data_url})


# ----------------------------------------------------------------------
# 3. ERROS HTTP (sempre JSON, sem detalhes internos)
# ----------------------------------------------------------------------

def handle_404(e):
    logger.info(f"404 Not Found: {sanitize_for_log(request.path)}")
    return _error('Não encontrado', 404)


def handle_405(e):
    return _error('Método não permitido', 405)


def handle_429(e):
    logger.warning(f"Rate limit excedido em {request.path}: {e.description}")
    return _error('Muitas requisições. Tente novamente em instantes.', 429)


def handle_500(e):
    logger.exception(f"Unhandled exception while handling request: {request.path}")
    return _error('Erro interno', 500)


# ----------------------------------------------------------------------
# 4. FÁBRICA DA APLICAÇÃO
# ----------------------------------------------------------------------

def create_app(config=None, gateway=None):
    """
    Cria a aplicação Flask.
    `gateway` permite injetar um cliente (ex.: fake nos testes); sem ele, o
    StripeGateway é criado a partir de STRIPE_SECRET_KEY, ou fica None.
    """
    app = Flask(__name__, static_folder=PUBLIC_DIR, static_url_path='')
    app.config.update(load_config())
    if config:
        app.config.update(config)

    configure_logging(app.config.get('LOG_FILE'))

    if gateway is None:
        gateway = get_gateway(app.config.get('STRIPE_SECRET_KEY'),
                              timeout=app.config['HTTP_TIMEOUT_SECONDS'])
    app.extensions['payment_gateway'] = gateway

    origins = app.config.get('ALLOWED_ORIGINS') or '*'
    CORS(app, resources={r"/*": {"origins": origins}}, supports_credentials=origins != '*')
    Talisman(app, content_security_policy=CSP_POLICY,
             force_https=app.config['FORCE_HTTPS'],
             strict_transport_security=app.config['STRICT_HSTS'])
    limiter.init_app(app)

    app.register_blueprint(bp)
    app.register_error_handler(404, handle_404)
    app.register_error_handler(405, handle_405)
    app.register_error_handler(429, handle_429)
    app.register_error_handler(500, handle_500)

    return app


if __name__ == '__main__':
    # Em produção, use debug=False; control via env
    application = create_app()
    debug_mode = os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
    logger.info(f"API + Front em http://localhost:{application.config['PORT']}")
    application.run(port=application.config['PORT'], debug=debug_mode)
