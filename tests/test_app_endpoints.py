import asyncio
import json
from typing import Optional
from urllib.parse import urlencode

import app
import db


async def _call_app(method: str, path: str, *, payload: Optional[dict] = None, query: Optional[dict] = None):
    body = b""
    headers = [(b"host", b"testserver")]
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _request(method: str, path: str, *, payload: Optional[dict] = None, query: Optional[dict] = None):
    return asyncio.run(_call_app(method, path, payload=payload, query=query))


def _put_module(module_id: int, **overrides) -> tuple[int, dict]:
    payload = {"course_id": 10, "name": "Connectives", "logic_expressions": "xy,x⋀y"}
    payload.update(overrides)
    return _request("PUT", f"/modules/{module_id}", payload=payload)


def _rows(attempt_payload: dict) -> list:
    return [row for problem in attempt_payload["problems"] for row in problem["rows"]]


def test_module_round_trip(temp_db):
    status, data = _put_module(1)
    assert status == 200
    assert data["module_id"] == 1
    assert data["tool_kind"] == "truthtable"

    status, data = _request("GET", "/modules/1")
    assert status == 200
    assert data["logic_expressions"] == "xy,x⋀y"

    status, data = _request("DELETE", "/modules/1")
    assert status == 200
    assert data == {"module_id": 1, "deleted": True}

    status, _ = _request("GET", "/modules/1")
    assert status == 404
    status, _ = _request("DELETE", "/modules/1")
    assert status == 404


def test_invalid_module_definitions_are_unprocessable(temp_db):
    assert _put_module(1, logic_expressions="xy,x⋀z")[0] == 422
    assert _put_module(1, logic_expressions="xy,x⋀(")[0] == 422
    assert _put_module(1, tool_kind="venn")[0] == 422
    assert db.get_module(1) is None


def test_open_attempt_hides_correct_values(temp_db):
    _put_module(1)
    status, data = _request("GET", "/modules/1/attempt", query={"user_id": "alice"})
    assert status == 200
    assert data["mode"] == "initial"
    rows = _rows(data)
    assert [row["interpretation"] for row in rows] == ["FF", "FT", "TF", "TT"]
    assert all("correct_value" not in row for row in rows)
    assert rows[0]["row_key"] == f"{rows[0]['problem_id']}:0:FF"

    status, again = _request("GET", f"/attempts/{data['attempt']['id']}", query={"user_id": "alice"})
    assert status == 200
    assert again["attempt"]["id"] == data["attempt"]["id"]


def test_attempt_requires_user(temp_db):
    _put_module(1)
    status, _ = _request("GET", "/modules/1/attempt")
    assert status == 422


def test_answers_submit_and_grades(temp_db):
    _put_module(1)
    _, graph = _request("GET", "/modules/1/attempt", query={"user_id": "alice"})
    attempt_id = graph["attempt"]["id"]
    keys = [row["row_key"] for row in _rows(graph)]

    status, data = _request(
        "POST",
        f"/attempts/{attempt_id}/answers",
        payload={"user_id": "alice", "answers": {keys[0]: "F", keys[1]: "F", keys[2]: "F"}},
    )
    assert status == 200
    assert data["updated"] == 3
    assert [row["input_value"] for row in _rows(data["attempt"])] == [False, False, False, None]

    status, result = _request("POST", f"/attempts/{attempt_id}/submit", payload={"user_id": "alice"})
    assert status == 200
    assert result["score"] == 75.0
    assert result["recorded"] is True

    status, finished = _request("GET", f"/attempts/{attempt_id}", query={"user_id": "alice"})
    assert finished["mode"] == "finished"
    assert [row["correct_value"] for row in _rows(finished)] == [False, False, False, True]

    status, grades = _request("GET", "/modules/1/grades")
    assert status == 200
    assert [(grade["user_id"], grade["grade"]) for grade in grades] == [("alice", 75.0)]

    status, _ = _request(
        "POST", f"/attempts/{attempt_id}/answers", payload={"user_id": "alice", "answers": {keys[3]: "T"}}
    )
    assert status == 409

    status, again = _request("POST", f"/attempts/{attempt_id}/submit", payload={"user_id": "alice"})
    assert status == 200
    assert again["score"] == 75.0
    assert again["recorded"] is False


def test_other_users_cannot_touch_an_attempt(temp_db):
    _put_module(1)
    _, graph = _request("GET", "/modules/1/attempt", query={"user_id": "alice"})
    attempt_id = graph["attempt"]["id"]

    assert _request("GET", f"/attempts/{attempt_id}", query={"user_id": "mallory"})[0] == 403
    assert _request("POST", f"/attempts/{attempt_id}/answers", payload={"user_id": "mallory"})[0] == 403
    assert _request("POST", f"/attempts/{attempt_id}/submit", payload={"user_id": "mallory"})[0] == 403


def test_bad_answers_are_rejected(temp_db):
    _put_module(1)
    _, graph = _request("GET", "/modules/1/attempt", query={"user_id": "alice"})
    attempt_id = graph["attempt"]["id"]
    key = _rows(graph)[0]["row_key"]

    status, _ = _request(
        "POST", f"/attempts/{attempt_id}/answers", payload={"user_id": "alice", "answers": {"bogus": True}}
    )
    assert status == 400
    status, _ = _request(
        "POST", f"/attempts/{attempt_id}/answers", payload={"user_id": "alice", "answers": {key: "maybe"}}
    )
    assert status == 400


def test_missing_resources(temp_db):
    assert _request("GET", "/modules/99/attempt", query={"user_id": "alice"})[0] == 404
    assert _request("GET", "/attempts/99", query={"user_id": "alice"})[0] == 404


def test_unimplemented_tool_kind(temp_db):
    status, _ = _put_module(2, tool_kind="truthtree")
    assert status == 200
    status, data = _request("GET", "/modules/2/attempt", query={"user_id": "alice"})
    assert status == 501
    assert "truth tree" in data["detail"]


def test_oversized_problem_is_rejected(temp_db):
    status, _ = _put_module(1, logic_expressions="abcdefghijklmnopqrst,a⋀t")
    assert status == 422
    assert db.get_module(1) is None


def test_list_modules_by_course(temp_db):
    _put_module(1)
    _put_module(2, course_id=11)
    _put_module(3)

    status, data = _request("GET", "/modules")
    assert status == 200
    assert [module["module_id"] for module in data] == [1, 2, 3]

    status, data = _request("GET", "/modules", query={"course_id": 10})
    assert status == 200
    assert [module["module_id"] for module in data] == [1, 3]
