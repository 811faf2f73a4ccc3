import pytest
from tether.client.servers import ServerPool, parse_server_url


@pytest.mark.parametrize(
    ("url", "scheme", "host", "port"),
    [
        ("nats://example.com:4333", "nats", "example.com", 4333),
        ("tls://example.com", "tls", "example.com", 4222),
        ("example.com", "nats", "example.com", 4222),
        ("example.com:5000", "nats", "example.com", 5000),
        ("nats://[::1]:4222", "nats", "::1", 4222),
        ("::1:4223", "nats", "::1", 4223),
        ("[::1]", "nats", "::1", 4222),
    ],
)
def test_parse_server_url(url, scheme, host, port):
    server = parse_server_url(url)
    assert (server.scheme, server.host, server.port) == (scheme, host, port)


def test_parse_server_url_rejects_unknown_scheme():
    with pytest.raises(ValueError, match="URL scheme"):
        parse_server_url("http://example.com")


def test_ipv6_url_is_bracketed():
    assert parse_server_url("::1:4222").url == "nats://[::1]:4222"


def test_pool_requires_a_server():
    with pytest.raises(ValueError):
        ServerPool([])


def test_pool_deduplicates_addresses():
    pool = ServerPool(["nats://a:4222", "a", "nats://b:4222"], randomize=False)
    assert [server.url for server in pool] == ["nats://a:4222", "nats://b:4222"]


def test_pool_keeps_first_server_when_randomizing():
    urls = [f"nats://host{i}:4222" for i in range(10)]
    pool = ServerPool(urls)
    servers = list(pool)

    assert servers[0].url == urls[0]
    assert sorted(server.url for server in servers) == sorted(urls)


def test_pool_round_robin_skips_failed_servers():
    pool = ServerPool(["a", "b", "c"], randomize=False)
    assert pool.current is None

    assert pool.next().host == "a"
    assert pool.current.host == "a"

    pool.mark_failed(list(pool)[1])
    assert pool.next().host == "c"
    assert pool.next().host == "a"


def test_pool_with_every_server_failed_returns_none():
    pool = ServerPool(["a", "b"], randomize=False)
    for server in pool:
        pool.mark_failed(server)

    assert pool.next() is None


def test_add_discovered_servers():
    pool = ServerPool(["nats://a:4222"], randomize=False)

    added = pool.add_discovered(["a:4222", "b:4222", "http://bad:1"], default_scheme="tls")

    assert [server.url for server in added] == ["tls://b:4222"]
    assert added[0].discovered
    assert len(pool) == 2
