from decimal import Decimal

import pytest

from isle.infra import jwt as jwt_helper


def _headers(user_id: str) -> dict[str, str]:
	return {"X-User-Id": user_id}


async def _create_group(api_client, owner="owner", members=()):
	resp = await api_client.post("/collab/groups", json={"name": "Cinque Terre"}, headers=_headers(owner))
	assert resp.status_code == 201
	group_id = resp.json()["id"]
	for member in members:
		added = await api_client.post(
			f"/collab/groups/{group_id}/members",
			json={"user_id": member},
			headers=_headers(owner),
		)
		assert added.status_code == 201
	return group_id


@pytest.mark.asyncio
async def test_requests_without_identity_are_rejected(api_client):
	resp = await api_client.get("/collab/groups")

	assert resp.status_code == 401
	assert resp.json()["detail"] == "invalid_token"
	assert resp.json()["request_id"]


@pytest.mark.asyncio
async def test_group_listing_and_membership(api_client):
	group_id = await _create_group(api_client, members=("ana",))

	mine = await api_client.get("/collab/groups", headers=_headers("ana"))
	members = await api_client.get(f"/collab/groups/{group_id}/members", headers=_headers("owner"))
	duplicate = await api_client.post(
		f"/collab/groups/{group_id}/members",
		json={"user_id": "ana"},
		headers=_headers("owner"),
	)
	outsider = await api_client.get(f"/collab/groups/{group_id}/members", headers=_headers("mallory"))

	assert [group["id"] for group in mine.json()] == [group_id]
	assert {(m["user_id"], m["role"]) for m in members.json()} == {("owner", "owner"), ("ana", "member")}
	assert duplicate.status_code == 409
	assert outsider.status_code == 403
	assert outsider.json()["detail"] == "not_group_member"


@pytest.mark.asyncio
async def test_decision_vote_flow_creates_activity(api_client):
	group_id = await _create_group(api_client, members=("ana", "rui"))

	created = await api_client.post(
		f"/collab/groups/{group_id}/decisions",
		json={"proposal": {"title": "Boat to Vernazza", "location": "Riomaggiore pier"}},
		headers=_headers("owner"),
	)
	assert created.status_code == 201
	decision = created.json()
	assert decision["majority"] == 2
	yes_id = next(option["id"] for option in decision["options"] if option["label"] == "Yes")

	first = await api_client.put(
		f"/collab/decisions/{decision['id']}/vote",
		json={"option_id": yes_id},
		headers=_headers("owner"),
	)
	assert first.status_code == 200
	assert first.json()["decision"]["status"] == "open"
	assert first.json()["decision"]["my_vote"] == yes_id

	second = await api_client.put(
		f"/collab/decisions/{decision['id']}/vote",
		json={"option_id": yes_id},
		headers=_headers("ana"),
	)
	body = second.json()
	assert body["decision"]["status"] == "approved"
	assert body["activity"]["title"] == "Boat to Vernazza"
	assert body["activity"]["location"] == "Riomaggiore pier"

	late = await api_client.put(
		f"/collab/decisions/{decision['id']}/vote",
		json={"option_id": yes_id},
		headers=_headers("rui"),
	)
	assert late.status_code == 409
	assert late.json()["detail"] == "decision_closed"

	activities = await api_client.get(f"/collab/groups/{group_id}/activities", headers=_headers("rui"))
	assert len(activities.json()) == 1

	init = await api_client.get(f"/collab/decisions/{decision['id']}/init", headers=_headers("rui"))
	tallies = {option["label"]: option["votes"] for option in init.json()["options"]}
	assert tallies == {"Yes": 2, "No": 0}


@pytest.mark.asyncio
async def test_expenses_and_budget(api_client):
	group_id = await _create_group(api_client, members=("ana",))

	bad = await api_client.post(
		f"/collab/groups/{group_id}/expenses",
		json={"item": "Gelato", "amount": "-2"},
		headers=_headers("ana"),
	)
	assert bad.status_code == 422
	assert bad.json()["detail"] == "invalid_amount"

	created = await api_client.post(
		f"/collab/groups/{group_id}/expenses",
		json={"item": "Gelato", "amount": "6.40", "paid_by": "Ana"},
		headers=_headers("ana"),
	)
	assert created.status_code == 201
	expense_id = created.json()["id"]

	patched = await api_client.patch(
		f"/collab/expenses/{expense_id}",
		json={"amount": 8},
		headers=_headers("owner"),
	)
	assert patched.status_code == 200

	budget = await api_client.put(f"/collab/groups/{group_id}/budget", json={"amount": 900}, headers=_headers("owner"))
	assert budget.status_code == 200

	init = await api_client.get(f"/collab/groups/{group_id}/expenses/init", headers=_headers("owner"))
	payload = init.json()
	assert Decimal(str(payload["total_spent"])) == Decimal("8")
	assert Decimal(str(payload["budget"]["amount"])) == Decimal("900")
	assert [expense["item"] for expense in payload["expenses"]] == ["Gelato"]

	deleted = await api_client.delete(f"/collab/expenses/{expense_id}", headers=_headers("owner"))
	assert deleted.status_code == 204
	after = await api_client.get(f"/collab/groups/{group_id}/expenses/init", headers=_headers("owner"))
	assert after.json()["expenses"] == []


@pytest.mark.asyncio
async def test_challenge_join_and_decline(api_client):
	group_id = await _create_group(api_client, members=("ana",))

	created = await api_client.post(
		f"/collab/groups/{group_id}/challenges",
		json={"title": "Swim at Monterosso", "duration_hours": 12},
		headers=_headers("owner"),
	)
	assert created.status_code == 201
	challenge_id = created.json()["id"]

	joined = await api_client.post(f"/collab/challenges/{challenge_id}/join", headers=_headers("owner"))
	declined = await api_client.post(f"/collab/challenges/{challenge_id}/decline", headers=_headers("ana"))

	assert joined.json()["status"] == "joined"
	assert joined.json()["expires_at"] is not None
	assert declined.json()["status"] == "declined"

	owner_board = await api_client.get(f"/collab/groups/{group_id}/challenges", headers=_headers("owner"))
	ana_board = await api_client.get(f"/collab/groups/{group_id}/challenges", headers=_headers("ana"))
	assert [c["my_status"] for c in owner_board.json()] == ["joined"]
	assert ana_board.json() == []


@pytest.mark.asyncio
async def test_health_and_metrics(api_client):
	live = await api_client.get("/health/live")
	metrics = await api_client.get("/metrics")

	assert live.json()["status"] == "ok"
	assert metrics.status_code == 200
	assert "isle_collab_votes_total" in metrics.text


@pytest.mark.asyncio
async def test_bearer_token_identifies_the_caller(api_client):
	token = jwt_helper.encode_access({"sub": "owner"})

	created = await api_client.post(
		"/collab/groups",
		json={"name": "Dolomites"},
		headers={"Authorization": f"Bearer {token}"},
	)
	listed = await api_client.get("/collab/groups", headers=_headers("owner"))
	rejected = await api_client.get("/collab/groups", headers={"Authorization": "Bearer not-a-token"})

	assert created.status_code == 201
	assert [group["id"] for group in listed.json()] == [created.json()["id"]]
	assert rejected.status_code == 401
