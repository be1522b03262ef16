"""
End-to-end tests for the experiment HTTP API.

Drives the Flask app through its test client against a temporary results log.
"""

from io import BytesIO

import pytest
from PIL import Image

from chromatrial.errors import ResultLogError
from config.settings import AppConfig, ResultLogConfig
from experiment.backend.app import TOKEN_HEADER, create_app


@pytest.fixture
def app(tmp_path, engine):
    static_dir = tmp_path / "static"
    static_dir.mkdir()
    (static_dir / "index.html").write_text("<html>colour trials</html>")

    app_config = AppConfig(
        secret_key="test-secret",
        static_dir=static_dir,
        results=ResultLogConfig(
            path=tmp_path / "results.jsonl",
            questionnaire_path=tmp_path / "questionnaire.jsonl",
        ),
    )
    app = create_app(app_config, engine=engine)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def log_lines(engine):
    return list(engine.result_log.iter_records(kind="response"))


class TestExperimentFlow:
    """Full session flows over HTTP."""

    def test_start_session(self, client, engine):
        """Starting a session should return trial 0 and set the cookie."""
        resp = client.post("/api/start-session")
        data = resp.get_json()

        assert resp.status_code == 200
        assert data["success"]
        assert data["trial_count"] == engine.trial_count
        assert data["trial"]["trial_index"] == 0
        assert data["trial"]["left"]["image_url"].startswith("/image.png?")
        assert data["token"] in engine.store
        assert "seed" not in data
        assert "seed" not in data["trial"]

    def test_trial_stable_across_reloads(self, client):
        """GET /api/trial should repeat the same trial until answered."""
        start = client.post("/api/start-session").get_json()

        first = client.get("/api/trial").get_json()
        second = client.get("/api/trial").get_json()

        assert first["trial"] == second["trial"] == start["trial"]

    def test_response_then_replay(self, client, engine):
        """A response is accepted once; the replay conflicts."""
        client.post("/api/start-session")
        payload = {"trial_index": 0, "chosen": "left", "latency_ms": 850}

        resp = client.post("/api/response", json=payload)
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["status"] == "accepted"
        assert data["next_trial_index"] == 1

        replay = client.post("/api/response", json=payload)
        assert replay.status_code == 409
        assert replay.get_json()["error"] == "trial_conflict"
        assert replay.get_json()["details"]["expected_trial_index"] == 1

        records = log_lines(engine)
        assert len(records) == 1
        assert records[0]["trial_index"] == 0
        assert records[0]["chosen"] == "left"

        assert client.get("/api/trial").get_json()["trial"]["trial_index"] == 1

    def test_complete_experiment(self, client, engine):
        """Answering every trial should complete the session."""
        client.post("/api/start-session")

        for i in range(engine.trial_count):
            trial = client.get("/api/trial").get_json()["trial"]
            assert trial["trial_index"] == i
            data = client.post(
                "/api/response",
                json={"trial_index": i, "chosen": "right", "latency_ms": 700},
            ).get_json()

        assert data["status"] == "completed"
        assert data["next_trial_index"] is None
        assert client.get("/api/trial").get_json()["status"] == "completed"

        late = client.post(
            "/api/response",
            json={"trial_index": engine.trial_count, "chosen": "left", "latency_ms": 1},
        )
        assert late.status_code == 409
        assert len(log_lines(engine)) == engine.trial_count

    def test_questionnaire(self, client, engine):
        """Questionnaire answers should be accepted for a live session."""
        client.post("/api/start-session")

        resp = client.post("/api/questionnaire", json={"answers": {"display": "laptop"}})

        assert resp.status_code == 200
        assert resp.get_json()["trials_completed"] == 0
        assert engine.questionnaire_log.count(kind="questionnaire") == 1

    def test_header_token(self, app):
        """API clients without cookies may send the token as a header."""
        token = app.test_client().post("/api/start-session").get_json()["token"]
        other = app.test_client()

        resp = other.post(
            "/api/response",
            json={"trial_index": 0, "chosen": "left", "latency_ms": 500},
            headers={TOKEN_HEADER: token},
        )

        assert resp.status_code == 200

    def test_header_token_overrides_cookie(self, client, engine):
        """An explicit header token should win over a stale session cookie."""
        stale = client.post("/api/start-session").get_json()["token"]
        engine.store.discard(stale)
        fresh = engine.start_session()

        resp = client.post(
            "/api/response",
            json={"trial_index": 0, "chosen": "right", "latency_ms": 500},
            headers={TOKEN_HEADER: fresh.token},
        )

        assert resp.status_code == 200
        assert fresh.current_trial_index == 1
        assert client.get("/api/trial").status_code == 404

    def test_body_token_overrides_cookie(self, client, engine):
        """A token in the JSON body should also win over the cookie."""
        client.post("/api/start-session")
        other = engine.start_session()

        resp = client.post(
            "/api/response",
            json={"token": other.token, "trial_index": 0, "chosen": "left", "latency_ms": 500},
        )

        assert resp.status_code == 200
        assert other.current_trial_index == 1


class TestErrors:
    """Error translation at the HTTP boundary."""

    def test_no_session(self, client):
        """Requests without a token should be 404."""
        resp = client.get("/api/trial")

        assert resp.status_code == 404
        assert resp.get_json()["error"] == "session_not_found"

    def test_unknown_token(self, client):
        """Unknown tokens should be 404."""
        resp = client.get("/api/trial", headers={TOKEN_HEADER: "forged"})

        assert resp.status_code == 404

    def test_invalid_choice(self, client, engine):
        """Malformed submissions should be 400 with no log entry."""
        client.post("/api/start-session")

        resp = client.post(
            "/api/response", json={"trial_index": 0, "chosen": "middle", "latency_ms": 500}
        )

        assert resp.status_code == 400
        assert resp.get_json()["error"] == "invalid_input"
        assert log_lines(engine) == []

    def test_non_json_body(self, client):
        """A body that is not JSON should be treated as malformed."""
        client.post("/api/start-session")

        resp = client.post("/api/response", data="chosen=left")

        assert resp.status_code == 400

    def test_log_failure_is_server_error(self, client, engine, monkeypatch):
        """A log failure should be 500 and leave the trial unanswered."""
        client.post("/api/start-session")

        def failing(record):
            raise ResultLogError("disk full")

        monkeypatch.setattr(engine.result_log, "append", failing)
        resp = client.post(
            "/api/response", json={"trial_index": 0, "chosen": "left", "latency_ms": 500}
        )

        assert resp.status_code == 500
        assert resp.get_json()["error"] == "result_log_error"
        assert client.get("/api/trial").get_json()["trial"]["trial_index"] == 0

    def test_expired_session(self, client, engine, clock):
        """Evicted sessions should be 404 on the next request."""
        client.post("/api/start-session")
        clock.advance(hours=1)
        engine.evict_expired()

        assert client.get("/api/trial").status_code == 404

    def test_unknown_route(self, client):
        """Unknown paths should return a JSON 404."""
        resp = client.get("/nowhere")

        assert resp.status_code == 404
        assert resp.get_json()["error"] == "not_found"

    def test_wrong_method(self, client):
        """Unsupported methods should be 405."""
        assert client.put("/api/response").status_code == 405


class TestStaticAndImages:
    """Static pages and stimulus images."""

    def test_health(self, client):
        """Health endpoint should report ok."""
        assert client.get("/api/health").get_json() == {"status": "ok"}

    def test_index(self, client):
        """The landing page should be served from the static directory."""
        resp = client.get("/")

        assert resp.status_code == 200
        assert b"colour trials" in resp.data

    def test_image(self, client):
        """image.png should render the requested colour."""
        resp = client.get("/image.png?r=12&g=34&b=56&size=3")

        assert resp.status_code == 200
        assert resp.mimetype == "image/png"
        image = Image.open(BytesIO(resp.data))
        assert image.size == (3, 3)
        assert image.getpixel((1, 1)) == (12, 34, 56)

    def test_image_default_size(self, client):
        """Without a size the image should be a single pixel."""
        resp = client.get("/image.png?r=0&g=0&b=0")

        assert Image.open(BytesIO(resp.data)).size == (1, 1)

    @pytest.mark.parametrize("query", [
        "r=1&g=2",
        "r=256&g=0&b=0",
        "r=a&g=0&b=0",
        "r=0&g=0&b=0&size=0",
        "r=0&g=0&b=0&size=5000",
    ])
    def test_image_bad_params(self, client, query):
        """Missing or out-of-range parameters should be 400."""
        assert client.get(f"/image.png?{query}").status_code == 400


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
