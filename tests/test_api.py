HEADERS = {"X-Tenant-ID": "tenant-1"}
OTHER_TENANT = {"X-Tenant-ID": "tenant-2"}


def _rule_payload(**overrides):
    payload = {
        "name": "Assign uploads",
        "priority": 1,
        "triggers": [{"type": "event", "event_type": "file.uploaded"}],
        "conditions": [],
        "actions": [
            {
                "type": "assignment",
                "name": "Assign to reviewer",
                "order": 1,
                "config": {"assign_to": "reviewer-1", "entity_id": "{{fileId}}"},
            }
        ],
    }
    payload.update(overrides)
    return payload


def _create_rule(client, **overrides):
    response = client.post("/automations/rules", json=_rule_payload(**overrides), headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


def test_health_and_root(test_context):
    client, _ = test_context
    assert client.get("/health").json() == {"ok": True}
    assert client.get("/").json()["docs"] == "/docs"


def test_missing_tenant_header_is_rejected(test_context):
    client, _ = test_context
    response = client.get("/automations/rules")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "bad_request"


def test_create_list_and_get_rule(test_context):
    client, _ = test_context
    created = _create_rule(client)

    assert created["id"].startswith("rule_")
    assert created["tenant_id"] == "tenant-1"

    listed = client.get("/automations/rules", headers=HEADERS).json()["items"]
    assert [item["id"] for item in listed] == [created["id"]]
    assert client.get("/automations/rules", headers=OTHER_TENANT).json()["items"] == []

    fetched = client.get(f"/automations/rules/{created['id']}", headers=HEADERS)
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "Assign uploads"


def test_rule_from_another_tenant_is_not_found(test_context):
    client, _ = test_context
    created = _create_rule(client)

    response = client.get(f"/automations/rules/{created['id']}", headers=OTHER_TENANT)

    assert response.status_code == 404
    body = response.json()["error"]
    assert body["code"] == "rule_not_found"
    assert body["path"] == f"/automations/rules/{created['id']}"
    assert body["request_id"]


def test_invalid_rule_payload_returns_validation_envelope(test_context):
    client, _ = test_context
    response = client.post(
        "/automations/rules",
        json=_rule_payload(name="x", actions=[{"type": "teleport", "config": {}}]),
        headers=HEADERS,
    )

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "validation_error"
    assert error["details"]


def test_update_and_deactivate_rule(test_context):
    client, _ = test_context
    created = _create_rule(client)

    updated = client.put(
        f"/automations/rules/{created['id']}",
        json=_rule_payload(name="Assign everything", priority=7),
        headers=HEADERS,
    )
    assert updated.status_code == 200
    assert updated.json()["priority"] == 7

    deactivated = client.post(f"/automations/rules/{created['id']}/deactivate", headers=HEADERS)
    assert deactivated.json()["is_active"] is False

    active_only = client.get("/automations/rules", params={"is_active": True}, headers=HEADERS).json()
    assert active_only["items"] == []

    executed = client.post(f"/automations/rules/{created['id']}/execute", json={}, headers=HEADERS)
    assert executed.status_code == 409
    assert executed.json()["error"]["code"] == "rule_inactive"


def test_manual_execution_returns_execution_record(test_context, fakes):
    client, _ = test_context
    created = _create_rule(client)

    response = client.post(
        f"/automations/rules/{created['id']}/execute",
        json={"trigger_data": {"fileId": "f1"}, "context": {"user_id": "u1"}},
        headers=HEADERS,
    )

    assert response.status_code == 200
    execution = response.json()
    assert execution["status"] == "completed"
    assert execution["triggered_by"] == "manual"
    assert execution["steps"][0]["output"]["assigned"] == 1
    assert fakes["assignments"].assignments[0]["entity_id"] == "f1"

    fetched = client.get(f"/automations/executions/{execution['id']}", headers=HEADERS)
    assert fetched.json()["id"] == execution["id"]
    assert client.get(f"/automations/executions/{execution['id']}", headers=OTHER_TENANT).status_code == 404


def test_execute_unknown_rule_returns_404(test_context):
    client, _ = test_context
    response = client.post("/automations/rules/rule_missing/execute", json={}, headers=HEADERS)

    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Automation rule 'rule_missing' not found"


def test_rate_limited_execution_returns_429_with_execution_id(test_context):
    client, engine = test_context
    created = _create_rule(client, settings={"max_executions_per_day": 1})

    assert client.post(f"/automations/rules/{created['id']}/execute", json={}, headers=HEADERS).status_code == 200
    response = client.post(f"/automations/rules/{created['id']}/execute", json={}, headers=HEADERS)

    assert response.status_code == 429
    error = response.json()["error"]
    assert error["code"] == "rate_limit_exceeded"
    assert error["details"][0]["field"] == "execution_id"

    failed = client.get("/automations/executions", params={"status": "failed"}, headers=HEADERS).json()
    assert [item["id"] for item in failed["items"]] == [error["details"][0]["message"]]


def test_event_dispatch_runs_matching_rules(test_context):
    client, _ = test_context
    created = _create_rule(client)
    _create_rule(client, name="Other event", triggers=[{"type": "event", "event_type": "qc.completed"}])

    response = client.post(
        "/automations/events",
        json={"event_type": "file.uploaded", "data": {"fileId": "f9"}, "context": {"user_id": "u1"}},
        headers=HEADERS,
    )

    assert response.status_code == 200
    [execution_id] = response.json()["execution_ids"]
    execution = client.get(f"/automations/executions/{execution_id}", headers=HEADERS).json()
    assert execution["rule_id"] == created["id"]
    assert execution["triggered_by"] == "event:file.uploaded"
    assert execution["context"]["metadata"]["tenant_id"] == "tenant-1"


def test_webhook_endpoint_checks_authentication(test_context):
    client, _ = test_context
    _create_rule(
        client,
        triggers=[
            {
                "type": "webhook",
                "webhook": {
                    "webhook_id": "deploys",
                    "authentication": {"type": "api_key", "credentials": {"key": "k-1"}},
                },
            }
        ],
        actions=[],
    )

    denied = client.post("/automations/webhooks/deploys", json={"ref": "main"})
    assert denied.json() == {"execution_ids": []}

    accepted = client.post("/automations/webhooks/deploys", json={"ref": "main"}, headers={"X-API-Key": "k-1"})
    assert len(accepted.json()["execution_ids"]) == 1

    assert client.post("/automations/webhooks/unknown").json() == {"execution_ids": []}


def test_execution_listing_paginates_newest_first(test_context):
    client, _ = test_context
    created = _create_rule(client, actions=[])
    ids = [
        client.post(f"/automations/rules/{created['id']}/execute", json={}, headers=HEADERS).json()["id"]
        for _ in range(3)
    ]

    page = client.get("/automations/executions", params={"limit": 2}, headers=HEADERS).json()
    assert page["pagination"] == {"total": 3, "limit": 2, "offset": 0, "count": 2, "has_next": True}
    assert {item["id"] for item in page["items"]} <= set(ids)

    rest = client.get("/automations/executions", params={"limit": 2, "offset": 2}, headers=HEADERS).json()
    assert rest["pagination"]["has_next"] is False
    assert len(rest["items"]) == 1


def test_cancel_finished_execution_returns_it_unchanged(test_context):
    client, _ = test_context
    created = _create_rule(client, actions=[])
    execution = client.post(f"/automations/rules/{created['id']}/execute", json={}, headers=HEADERS).json()

    response = client.post(f"/automations/executions/{execution['id']}/cancel", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert client.post("/automations/executions/exec_missing/cancel", headers=HEADERS).status_code == 404


def test_template_endpoint_creates_rule(test_context):
    client, _ = test_context
    response = client.post(
        "/automations/templates/file_auto_assign",
        json={"config": {"reviewer_id": "reviewer-2"}, "created_by": "admin-1"},
        headers=HEADERS,
    )

    assert response.status_code == 201
    rule = response.json()
    assert rule["name"] == "Auto-assign Files"
    assert rule["metadata"]["created_by"] == "admin-1"

    missing = client.post("/automations/templates/unknown", json={}, headers=HEADERS)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "template_not_found"

    incomplete = client.post("/automations/templates/qc_failure_alert", json={}, headers=HEADERS)
    assert incomplete.status_code == 400


def test_metrics_endpoint(test_context):
    client, _ = test_context
    created = _create_rule(client, actions=[])
    client.post(f"/automations/rules/{created['id']}/execute", json={}, headers=HEADERS)

    metrics = client.get("/automations/metrics", headers=HEADERS).json()
    assert metrics["total_rules"] == 1
    assert metrics["total_executions"] == 1
    assert metrics["top_rules"][0]["rule_id"] == created["id"]

    inverted = client.get(
        "/automations/metrics",
        params={"start": "2024-03-05T00:00:00Z", "end": "2024-03-04T00:00:00Z"},
        headers=HEADERS,
    )
    assert inverted.status_code == 422
