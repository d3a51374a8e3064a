from conftest import add_user, auth_headers


def shorten(client, headers):
    return client.post("/api/shorten", json={"longUrl": "https://example.com/x"}, headers=headers)


def test_eleventh_request_in_window_is_rejected(client, headers, user, redis_client):
    for _ in range(10):
        assert shorten(client, headers).status_code == 201

    res = shorten(client, headers)
    assert res.status_code == 429
    assert res.headers["content-type"].startswith("text/plain")
    assert res.text == "Rate limit exceeded. Try again later."

    ttl = redis_client.ttl(f"rl:{user.id}")
    assert 0 < ttl <= 3600


def test_window_reset_allows_requests_again(client, headers, user, redis_client):
    for _ in range(11):
        shorten(client, headers)
    assert shorten(client, headers).status_code == 429

    # Window expiry.
    redis_client.delete(f"rl:{user.id}")
    assert shorten(client, headers).status_code == 201


def test_rejected_requests_do_not_extend_the_window(client, headers, user, redis_client):
    for _ in range(10):
        shorten(client, headers)
    redis_client.expire(f"rl:{user.id}", 5)

    assert shorten(client, headers).status_code == 429
    assert redis_client.ttl(f"rl:{user.id}") <= 5


def test_limit_is_per_user(app, client, headers):
    for _ in range(10):
        shorten(client, headers)
    assert shorten(client, headers).status_code == 429

    other = add_user(app, google_id="g-2", email="other@example.com")
    assert shorten(client, auth_headers(app, other.id)).status_code == 201


def test_redirects_are_not_rate_limited(client, headers):
    alias = shorten(client, headers).json()["alias"]
    for _ in range(15):
        assert client.get(f"/api/shorten/{alias}", headers=headers).status_code == 302
