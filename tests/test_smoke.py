def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_public_pages_render(client):
    for path in ("/", "/plans", "/about", "/contact", "/rules", "/leaderboard", "/auth/login", "/auth/signup"):
        r = client.get(path)
        assert r.status_code == 200, path


def test_plans_page_lists_every_plan(client):
    r = client.get("/plans")
    assert r.status_code == 200
    body = r.get_data(as_text=True)
    assert "$199.00" in body
    assert "$999.00" in body


def test_login_and_admin_access(client, login):
    # Anonymous is sent to login
    r = client.get("/admin/")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    r = login()
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/")

    r = client.get("/admin/")
    assert r.status_code == 200


def test_login_failure_flashes_generic_message(client, login):
    r = login(password="wrong-password")
    assert r.status_code == 302
    r = client.get("/auth/login")
    assert "Invalid email or password." in r.get_data(as_text=True)


def test_login_rate_limited_after_five_failures(client, login):
    for _ in range(5):
        login(password="nope-nope")
    # Even the right password is refused once the window is full
    r = login()
    assert r.headers["Location"].endswith("/auth/login")
    r = client.get("/admin/")
    assert r.status_code == 302


def test_post_without_csrf_token_is_rejected(client, login):
    login()
    r = client.post("/admin/leaderboard/update", data={})
    assert r.status_code == 400


def test_unknown_page_404_and_api_404_json(client):
    r = client.get("/does-not-exist")
    assert r.status_code == 404
    assert "Page not found" in r.get_data(as_text=True)

    r = client.get("/api/nothing-here")
    assert r.status_code == 404
    assert r.json == {"error": "Not found"}
