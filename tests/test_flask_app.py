import pytest

from compliance_registry.flask_app import flask_app


@pytest.fixture
def flask_client():
    flask_app.config["TESTING"] = True
    return flask_app.test_client()


def test_healthz_through_flask(flask_client):
    response = flask_client.get("/healthz")
    assert response.status_code == 200
    assert response.get_data(as_text=True) == "ok"


def test_pages_keep_security_headers(flask_client, seeded):
    response = flask_client.get("/equipment?sort=asset_tag&dir=desc")
    assert response.status_code == 200
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    body = response.get_data(as_text=True)
    assert body.index(">T-1<") < body.index(">P-10<") < body.index(">P-2<")


def test_post_redirects_through_flask(flask_client, seeded):
    response = flask_client.post("/users/new", data={"name": "", "email": "", "role": ""})
    assert response.status_code == 302
    assert "/users/new?msg=" in response.headers["Location"]


def test_unknown_route_is_404(flask_client):
    assert flask_client.get("/does/not/exist").status_code == 404


def test_init_db_cli_command(temp_database):
    runner = flask_app.test_cli_runner()
    result = runner.invoke(args=["init-db"])
    assert result.exit_code == 0
    assert "Database initialized successfully!" in result.output
