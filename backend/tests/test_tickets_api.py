import pytest

from ticketdesk.schemas.ticket import TicketOut
from ticketdesk.storage.db import get_session
from ticketdesk.storage.repositories import user_create


def _upload(n, size=16):
    return [("files", (f"doc-{i}.pdf", b"x" * size, "application/pdf")) for i in range(n)]


class TestTicketCrud:
    @pytest.mark.asyncio
    async def test_create_get_and_list(self, client):
        response = await client.post(
            "/api/tickets",
            json={"title": "Damaged box", "description": "Arrived crushed", "senderEmail": "amy@example.com"},
        )
        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "new"
        assert created["priority"] == "medium"

        response = await client.get(f"/api/tickets/{created['id']}")
        assert response.status_code == 200
        assert response.json()["senderEmail"] == "amy@example.com"

        response = await client.get("/api/tickets", params={"status": "new"})
        assert [t["id"] for t in response.json()] == [created["id"]]

    @pytest.mark.asyncio
    async def test_unknown_ticket_is_404(self, client):
        response = await client.get("/api/tickets/999")
        assert response.status_code == 404
        assert response.json()["detail"] == "Ticket not found"

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json()["status"] == "ok"


class TestPartialUpdate:
    @pytest.mark.asyncio
    async def test_only_sent_fields_change(self, client, make_ticket, agent):
        ticket_id = await make_ticket(status="open", priority="high")

        response = await client.put(f"/api/tickets/{ticket_id}", json={"assigneeId": agent.id})

        body = response.json()
        assert response.status_code == 200
        assert body["assignee"]["id"] == agent.id
        assert body["status"] == "open"
        assert body["priority"] == "high"

    @pytest.mark.asyncio
    async def test_explicit_null_unassigns(self, client, make_ticket, agent):
        ticket_id = await make_ticket(assignee_id=agent.id)

        response = await client.put(f"/api/tickets/{ticket_id}", json={"assigneeId": None})

        assert response.json()["assignee"] is None

    @pytest.mark.asyncio
    async def test_updated_at_moves_forward(self, client, make_ticket):
        ticket_id = await make_ticket()
        before = TicketOut.model_validate((await client.get(f"/api/tickets/{ticket_id}")).json())

        after = TicketOut.model_validate((await client.put(f"/api/tickets/{ticket_id}", json={"status": "closed"})).json())

        assert after.status.value == "closed"
        assert after.updatedAt >= before.updatedAt

    @pytest.mark.asyncio
    async def test_unknown_assignee_is_404(self, client, make_ticket):
        ticket_id = await make_ticket()
        response = await client.put(f"/api/tickets/{ticket_id}", json={"assigneeId": "nobody"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_status_is_422(self, client, make_ticket):
        ticket_id = await make_ticket()
        response = await client.put(f"/api/tickets/{ticket_id}", json={"status": "resolved"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_merged_ticket_rejects_status_change(self, client, make_ticket):
        primary, source = await make_ticket("A"), await make_ticket("B")
        await client.post(f"/api/tickets/{primary}/merge", json={"sourceTicketIds": [source]})

        response = await client.put(f"/api/tickets/{source}", json={"status": "open"})

        assert response.status_code == 409
        # Priority is not part of the terminal lock
        response = await client.put(f"/api/tickets/{source}", json={"priority": "low"})
        assert response.status_code == 200


class TestAttachmentsAndReplies:
    @pytest.mark.asyncio
    async def test_upload_limits(self, client, make_ticket):
        ticket_id = await make_ticket()

        too_many = await client.post(f"/api/tickets/{ticket_id}/attachments", files=_upload(6))
        assert too_many.status_code == 400

        too_big = await client.post(
            f"/api/tickets/{ticket_id}/attachments", files=_upload(1, size=5 * 1024 * 1024)
        )
        assert too_big.status_code == 413

        batch_too_big = await client.post(
            f"/api/tickets/{ticket_id}/attachments", files=_upload(2, size=3 * 1024 * 1024)
        )
        assert batch_too_big.status_code == 413
        assert "Total upload size" in batch_too_big.json()["detail"]

    @pytest.mark.asyncio
    async def test_reply_claims_uploaded_attachments(self, client, make_ticket):
        ticket_id = await make_ticket()
        uploaded = (await client.post(f"/api/tickets/{ticket_id}/attachments", files=_upload(2))).json()
        ids = [a["id"] for a in uploaded["attachments"]]
        assert all(a["commentId"] is None for a in uploaded["attachments"])

        response = await client.post(
            f"/api/tickets/{ticket_id}/reply",
            json={"content": "Docs attached", "sendAsEmail": True, "attachmentIds": ids},
        )

        assert response.status_code == 201
        comment = response.json()
        assert [a["id"] for a in comment["attachments"]] == ids
        ticket = (await client.get(f"/api/tickets/{ticket_id}")).json()
        assert ticket["status"] == "pending_customer"
        assert all(a["commentId"] == comment["id"] for a in ticket["attachments"])

        # Attachments can only be claimed once
        again = await client.post(
            f"/api/tickets/{ticket_id}/reply", json={"content": "again", "attachmentIds": ids}
        )
        assert again.status_code == 400

    @pytest.mark.asyncio
    async def test_empty_reply_is_400(self, client, make_ticket):
        ticket_id = await make_ticket()
        response = await client.post(f"/api/tickets/{ticket_id}/reply", json={"content": "  "})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_email_reply_leaves_closed_ticket_closed(self, client, make_ticket):
        ticket_id = await make_ticket(status="closed")

        await client.post(f"/api/tickets/{ticket_id}/reply", json={"content": "One more thing", "sendAsEmail": True})

        ticket = (await client.get(f"/api/tickets/{ticket_id}")).json()
        assert ticket["status"] == "closed"
        assert ticket["comments"][0]["isOutgoingReply"]

    @pytest.mark.asyncio
    async def test_internal_note_overrides_send_as_email(self, client, make_ticket):
        ticket_id = await make_ticket(status="open")

        response = await client.post(
            f"/api/tickets/{ticket_id}/reply",
            json={"content": "Note", "isInternalNote": True, "sendAsEmail": True},
        )

        assert response.json()["isOutgoingReply"] is False
        assert (await client.get(f"/api/tickets/{ticket_id}")).json()["status"] == "open"


class TestMerge:
    @pytest.mark.asyncio
    async def test_merge_closes_sources_and_links_them(self, client, make_ticket):
        primary = await make_ticket("Primary")
        sources = [await make_ticket("Dup 1"), await make_ticket("Dup 2")]

        response = await client.post(f"/api/tickets/{primary}/merge", json={"sourceTicketIds": sources})

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == f"Successfully merged 2 ticket(s) into ticket #{primary}."
        assert all(r["merged"] for r in body["results"])
        merged = (await client.get(f"/api/tickets/{primary}")).json()
        assert sorted(m["id"] for m in merged["mergedTickets"]) == sorted(sources)
        assert len(merged["comments"]) == 2
        for source in sources:
            absorbed = (await client.get(f"/api/tickets/{source}")).json()
            assert absorbed["status"] == "closed"
            assert absorbed["mergedIntoTicketId"] == primary

    @pytest.mark.asyncio
    async def test_self_merge_is_400(self, client, make_ticket):
        ticket_id = await make_ticket()
        response = await client.post(f"/api/tickets/{ticket_id}/merge", json={"sourceTicketIds": [ticket_id]})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_merge_is_all_or_nothing(self, client, make_ticket):
        primary, good = await make_ticket("P"), await make_ticket("G")

        response = await client.post(f"/api/tickets/{primary}/merge", json={"sourceTicketIds": [good, 999]})

        assert response.status_code == 409
        results = {r["ticketId"]: r for r in response.json()["detail"]["results"]}
        assert results[999]["error"] == "Ticket not found."
        assert results[good]["merged"] is False
        untouched = (await client.get(f"/api/tickets/{good}")).json()
        assert untouched["mergedIntoTicketId"] is None

    @pytest.mark.asyncio
    async def test_absorbed_ticket_cannot_be_merge_target(self, client, make_ticket):
        a, b, c = await make_ticket("A"), await make_ticket("B"), await make_ticket("C")
        await client.post(f"/api/tickets/{a}/merge", json={"sourceTicketIds": [b]})

        response = await client.post(f"/api/tickets/{b}/merge", json={"sourceTicketIds": [c]})

        assert response.status_code == 409


class TestUsers:
    @pytest.mark.asyncio
    async def test_list_users(self, client, database):
        async with get_session() as session:
            await user_create(session, name="Zed", email="zed@example.com")
            await user_create(session, name="Ann", email="ann@example.com")

        response = await client.get("/api/users")

        assert [u["name"] for u in response.json()] == ["Ann", "Zed"]
