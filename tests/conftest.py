import os
import sys
import pytest

# Ensure project root is on sys.path for module resolution
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from app import create_app
from pagamentos_gateway import BaseGateway, CheckoutSession

TEST_CONFIG = {
    'TESTING': True,
    'STRIPE_SECRET_KEY': None,
    'FRONTEND_URL': 'http://localhost:4242',
    'ALLOWED_ORIGINS': [],
    'FORCE_HTTPS': False,
    'LOG_FILE': '',
    'RATELIMIT_ENABLED': False,
}

PAID_SESSION = {
    'id': 'cs_test123',
    'object': 'checkout.session',
    'payment_status': 'paid',
    'amount_total': 1050,
    'currency': 'brl',
    'payment_intent': {'id': 'pi_123', 'object': 'payment_intent', 'status': 'succeeded'},
}


class FakeGateway(BaseGateway):
    """Gateway em memória que registra as chamadas recebidas."""

    def __init__(self, session=None, error=None):
        self.created = []
        self.retrieved = []
        self.session = session if session is not None else dict(PAID_SESSION)
        self.error = error

    def create_checkout_session(self, **kwargs):
        self.created.append(kwargs)
        if self.error:
            raise self.error
        return CheckoutSession(id='cs_test123', url='https://checkout.stripe.com/c/pay/cs_test123')

    def retrieve_checkout_session(self, session_id, expand=('payment_intent',)):
        self.retrieved.append((session_id, tuple(expand)))
        if self.error:
            raise self.error
        return self.session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def test_app(gateway):
    return create_app(dict(TEST_CONFIG), gateway=gateway)


@pytest.fixture
def client(test_app):
    return test_app.test_client()


@pytest.fixture
def offline_client():
    # Sem STRIPE_SECRET_KEY e sem gateway injetado: só o PIX offline funciona
    app = create_app(dict(TEST_CONFIG))
    return app.test_client()
