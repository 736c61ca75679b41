"""StoreHttpClient：状态码分类 + 读请求的有限重试"""
import pytest
import requests

from syncbridge.integrations.errors import (
    Conflict, ConnectorError, NotFound, PayloadError, RateLimited, TransientNetworkError,
    Unauthorized, UpstreamServerError, parse_retry_after,
)
from syncbridge.integrations.http_client import StoreHttpClient, raise_for_store_status
from syncbridge.integrations.shopify import oauth as shopify_oauth


@pytest.fixture
def make_client(http):
    def _make(*responses, sleeps=None):
        session = http.session(*responses)
        client = StoreHttpClient(
            "https://shop.example.com/wp-json/wc/v3",
            vendor="test",
            params={"consumer_key": "ck"},
            session=session,
            sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
        )
        return client, session
    return _make


# ---------- 状态码映射 ----------
@pytest.mark.parametrize("status, exc_type", [
    (401, Unauthorized),
    (403, Unauthorized),
    (404, NotFound),
    (409, Conflict),
    (408, UpstreamServerError),
    (500, UpstreamServerError),
    (503, UpstreamServerError),
])
def test_status_mapping(http, status, exc_type):
    with pytest.raises(exc_type) as exc:
        raise_for_store_status(http.response(status, {"error": "x"}))
    assert exc.value.status_code == status


def test_429_carries_retry_after(http):
    with pytest.raises(RateLimited) as exc:
        raise_for_store_status(http.response(429, {}, headers={"Retry-After": "12"}))
    assert exc.value.retry_after == 12.0


def test_other_4xx_is_plain_connector_error(http):
    with pytest.raises(ConnectorError) as exc:
        raise_for_store_status(http.response(422, {"message": "bad"}))
    assert type(exc.value) is ConnectorError
    assert '"bad"' in exc.value.body


def test_2xx_passes(http):
    assert raise_for_store_status(http.response(201, {})) is None


@pytest.mark.parametrize("raw, expected", [("5", 5.0), ("2.5", 2.5), ("-3", 0.0), ("Wed, 21 Oct 2026 07:28:00 GMT", None), (None, None)])
def test_parse_retry_after(raw, expected):
    assert parse_retry_after(raw) == expected


# ---------- 请求 ----------
def test_default_params_and_url_join(http, make_client):
    client, session = make_client(http.response(200, [{"id": 1}]))

    assert client.get_json("products", {"page": 2}) == [{"id": 1}]

    [call] = session.calls
    assert call.url == "https://shop.example.com/wp-json/wc/v3/products"
    assert call.params == {"consumer_key": "ck", "page": 2}
    assert call.headers["Accept"] == "application/json"


def test_read_retries_transient_errors(http, make_client):
    sleeps = []
    client, session = make_client(
        http.response(503, {}),
        http.response(429, {}, headers={"Retry-After": "2"}),
        http.response(200, {"ok": True}),
        sleeps=sleeps,
    )

    assert client.get_json("products", retries=3) == {"ok": True}
    assert len(session.calls) == 3
    assert len(sleeps) == 2
    assert sleeps[1] == 2.0


def test_long_retry_after_is_not_slept_in_worker(http, make_client):
    sleeps = []
    client, session = make_client(
        http.response(429, {}, headers={"Retry-After": "120"}),
        http.response(200, {"ok": True}),
        sleeps=sleeps,
    )

    with pytest.raises(RateLimited) as exc:
        client.get_json("products", retries=3)
    assert exc.value.retry_after == 120
    assert sleeps == []
    assert len(session.calls) == 1


def test_write_is_not_retried(http, make_client):
    client, session = make_client(http.response(503, {}), http.response(200, {}))
    with pytest.raises(UpstreamServerError):
        client.request("POST", "products", json={"sku": "A"})
    assert len(session.calls) == 1


def test_unauthorized_never_retried(http, make_client):
    client, session = make_client(http.response(401, {}), http.response(200, {}))
    with pytest.raises(Unauthorized):
        client.get_json("products", retries=5)
    assert len(session.calls) == 1


@pytest.mark.parametrize("error", [requests.Timeout("read timed out"), requests.ConnectionError("refused")])
def test_transport_errors_become_transient(make_client, error):
    client, _ = make_client(error)
    with pytest.raises(TransientNetworkError):
        client.get_json("products")


def test_non_json_body(http, make_client):
    client, _ = make_client(http.response(200, text="<html>maintenance</html>"))
    with pytest.raises(PayloadError):
        client.get_json("products")


# ---------- OAuth token 交换 ----------
def test_exchange_code_posts_credentials(http):
    session = http.session(http.response(200, {"access_token": "shpat_x", "scope": "read_products"}))

    data = shopify_oauth.exchange_code_for_token("supplier.myshopify.com", "the-code", session=session)

    assert data["access_token"] == "shpat_x"
    [call] = session.calls
    assert call.url == "https://supplier.myshopify.com/admin/oauth/access_token"
    assert call.json["code"] == "the-code"
    assert call.json["client_secret"] == "test-api-secret"
    assert session.closed is False


def test_exchange_code_rejected(http):
    session = http.session(http.response(400, {"error": "invalid_request"}))
    with pytest.raises(ConnectorError) as exc:
        shopify_oauth.exchange_code_for_token("supplier.myshopify.com", "bad", session=session)
    assert "invalid_request" in exc.value.body
