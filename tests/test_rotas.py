from conftest import FakeGateway, TEST_CONFIG
from app import create_app
from pagamentos_gateway import GatewayError

BRCODE = '00020126580014BR.GOV.BCB.PIX0136123e4567-e12b-12d1-a456-4266554400005204000053039865802BR'


def test_health(client):
    resp = client.get('/health')
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['ok'] is True
    assert 'time' in body


def test_static_pages_served(client):
    assert client.get('/').status_code == 200
    assert client.get('/sucesso.html').status_code == 200
    assert client.get('/cancelado.html').status_code == 200


def test_unknown_route_returns_json_error(client):
    resp = client.get('/nao-existe')
    assert resp.status_code == 404
    assert 'error' in resp.get_json()


# ========== Checkout ==========

def test_create_session_returns_url(client, gateway):
    resp = client.post('/create-checkout-session', json={'amount': 10.5, 'method': 'card'},
                       headers={'Origin': 'https://doe.example'})
    assert resp.status_code == 200
    assert resp.get_json() == {'url': 'https://checkout.stripe.com/c/pay/cs_test123'}
    call = gateway.created[0]
    assert call['unit_amount'] == 1050
    assert call['payment_method_types'] == ['card']
    assert call['success_url'] == 'https://doe.example/sucesso.html?session_id={CHECKOUT_SESSION_ID}'


def test_create_session_invalid_return_base_uses_fallback(client, gateway):
    resp = client.post('/create-checkout-session', json={'amount': 5, 'returnBase': 'not-a-url'},
                       headers={'Origin': 'https://doe.example'})
    assert resp.status_code == 200
    assert gateway.created[0]['cancel_url'] == 'http://localhost:4242/cancelado.html'


def test_create_session_missing_amount(client, gateway):
    resp = client.post('/create-checkout-session', json={'method': 'pix'})
    assert resp.status_code == 400
    assert resp.get_json() == {'error': 'amount é obrigatório'}
    assert gateway.created == []


def test_create_session_invalid_amounts(client, gateway):
    for amount in (0, -3, 'abc', 'NaN'):
        resp = client.post('/create-checkout-session', json={'amount': amount})
        assert resp.status_code == 400
        assert resp.get_json() == {'error': 'amount inválido'}
    assert gateway.created == []


def test_create_session_without_body(client, gateway):
    resp = client.post('/create-checkout-session', data='nada', content_type='text/plain')
    assert resp.status_code == 400
    assert resp.get_json() == {'error': 'amount é obrigatório'}


def test_create_session_gateway_error_is_generic():
    gateway = FakeGateway(error=GatewayError('HTTP 500: segredo interno', status_code=500))
    client = create_app(dict(TEST_CONFIG), gateway=gateway).test_client()
    resp = client.post('/create-checkout-session', json={'amount': 20})
    assert resp.status_code == 500
    assert resp.get_json() == {'error': 'Falha ao criar sessão de pagamento'}
    assert len(gateway.created) == 1


# ========== Status da sessão ==========

def test_session_status(client, gateway):
    resp = client.get('/checkout-session/cs_test123')
    assert resp.status_code == 200
    assert resp.get_json() == {
        'payment_status': 'paid',
        'amount_total': 1050,
        'currency': 'brl',
        'payment_intent_status': 'succeeded',
    }
    assert gateway.retrieved == [('cs_test123', ('payment_intent',))]


def test_session_status_malformed_id(client, gateway):
    for session_id in ('abc', 'cs_abc-1', 'cs_test_1'):
        resp = client.get(f'/checkout-session/{session_id}')
        assert resp.status_code == 400
        assert resp.get_json() == {'error': 'id inválido'}
    assert gateway.retrieved == []


def test_session_status_gateway_error():
    gateway = FakeGateway(error=GatewayError('HTTP 404: No such checkout.session', status_code=404))
    client = create_app(dict(TEST_CONFIG), gateway=gateway).test_client()
    resp = client.get('/checkout-session/cs_missing')
    assert resp.status_code == 500
    assert resp.get_json() == {'error': 'Falha ao consultar sessão'}


# ========== PIX offline ==========

def test_pix_qrcode(client):
    resp = client.post('/pix/qrcode', json={'brcode': BRCODE})
    assert resp.status_code == 200
    assert resp.get_json()['dataUrl'].startswith('data:image/png;base64,')


def test_pix_qrcode_invalid_brcode(client):
    for body in ({}, {'brcode': 'x' * 19}, {'brcode': 123456789012345678901}):
        resp = client.post('/pix/qrcode', json=body)
        assert resp.status_code == 400
        assert resp.get_json() == {'error': 'brcode inválido'}


def test_pix_qrcode_rendering_failure(client, monkeypatch):
    import pagamentos

    def explode(*args, **kwargs):
        raise RuntimeError('falhou')

    monkeypatch.setattr(pagamentos.qrcode.QRCode, 'make_image', explode)
    resp = client.post('/pix/qrcode', json={'brcode': BRCODE})
    assert resp.status_code == 500
    assert resp.get_json() == {'error': 'Falha ao gerar QR Code'}


# ========== Sem Stripe configurado ==========

def test_unconfigured_instance_disables_only_gateway(offline_client):
    for body in ({'amount': 10}, {}, {'amount': 'abc'}):
        resp = offline_client.post('/create-checkout-session', json=body)
        assert resp.status_code == 503
        assert resp.get_json() == {'error': 'Stripe não configurado'}

    for session_id in ('cs_abc123', 'invalido'):
        resp = offline_client.get(f'/checkout-session/{session_id}')
        assert resp.status_code == 503

    resp = offline_client.post('/pix/qrcode', json={'brcode': '00020126580014BR.GOV.BCB.PIX...', 'size': 300})
    assert resp.status_code == 200
    assert resp.get_json()['dataUrl']


# ========== Cabeçalhos e rate limit ==========

def test_security_headers_present(client):
    resp = client.get('/health')
    csp = resp.headers.get('Content-Security-Policy')
    assert csp is not None
    assert "img-src 'self' data:" in csp


def test_create_session_rate_limited():
    gateway = FakeGateway()
    config = dict(TEST_CONFIG, RATELIMIT_ENABLED=True, RATELIMIT_STORAGE_URI='memory://')
    client = create_app(config, gateway=gateway).test_client()
    for _ in range(20):
        resp = client.post('/create-checkout-session', json={'amount': 10})
        assert resp.status_code == 200
    resp = client.post('/create-checkout-session', json={'amount': 10})
    assert resp.status_code == 429
    assert resp.get_json() == {'error': 'Muitas requisições. Tente novamente em instantes.'}
    assert len(gateway.created) == 20
