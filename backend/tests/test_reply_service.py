import json

import httpx
import pytest

from factories import comment, ticket
from ticketdesk.errors import ValidationError
from ticketdesk.schemas.ticket import TicketStatus
from ticketdesk.services.api_client import TicketApiClient
from ticketdesk.services.reply_service import ComposeForm, ReplyComposer, ReplyFile, submit_reply
from ticketdesk.state.store import TicketStore


def _files(n):
    return [ReplyFile(filename=f"photo-{i}.jpg", content=b"\xff\xd8" * 10, mimeType="image/jpeg") for i in range(n)]


class Recorder:
    """MockTransport handler that routes by (method, path) and remembers every call."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        self.calls.append(key)
        return self.routes[key](request)


def _mock_api(routes) -> tuple[TicketApiClient, Recorder]:
    recorder = Recorder(routes)
    return TicketApiClient("http://test", transport=httpx.MockTransport(recorder)), recorder


def _ticket_route(request):
    return httpx.Response(200, json=ticket(42).model_dump(mode="json"))


def _uploaded_route(request):
    return httpx.Response(
        200,
        json={
            "attachments": [
                {
                    "id": 1,
                    "originalFilename": "photo-0.jpg",
                    "fileSize": 20,
                    "mimeType": "image/jpeg",
                    "uploadedAt": "2024-05-01T09:00:00Z",
                    "ticketId": 42,
                }
            ]
        },
    )


class TestValidation:
    @pytest.mark.asyncio
    async def test_six_files_rejected_before_any_request(self):
        api, recorder = _mock_api({})

        result = await submit_reply(api, 42, "hello", False, True, _files(6))

        assert not result.ok
        assert result.error.kind == "validation"
        assert "Maximum 5 files" in result.error.message
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_empty_reply_rejected(self):
        api, recorder = _mock_api({})

        result = await submit_reply(api, 42, "   ", False, True, [])

        assert result.error.kind == "validation"
        assert recorder.calls == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_upload_failure_creates_no_comment(self):
        api, recorder = _mock_api(
            {
                ("GET", "/api/tickets/42"): _ticket_route,
                ("POST", "/api/tickets/42/attachments"): lambda r: httpx.Response(
                    413, json={"detail": "Total upload size exceeds the 4.5 MB limit."}
                ),
            }
        )
        store = TicketStore(api, 42, snapshot=ticket(42))

        result = await submit_reply(api, 42, "see attached", False, True, _files(2), store=store)

        assert not result.ok
        assert result.error.kind == "upload"
        assert result.error.message == "Total upload size exceeds the 4.5 MB limit."
        assert ("POST", "/api/tickets/42/reply") not in recorder.calls
        assert store.snapshot.comments == []

    @pytest.mark.asyncio
    async def test_comment_failure_rolls_back_optimistic_reply(self):
        api, recorder = _mock_api(
            {
                ("GET", "/api/tickets/42"): _ticket_route,
                ("POST", "/api/tickets/42/attachments"): _uploaded_route,
                ("POST", "/api/tickets/42/reply"): lambda r: httpx.Response(502, json={"error": "Mail relay down"}),
            }
        )
        store = TicketStore(api, 42, snapshot=ticket(42))
        seen = []
        store.subscribe(seen.append)

        result = await submit_reply(api, 42, "see attached", False, True, _files(1), store=store)

        assert result.error.kind == "write"
        assert result.error.message == "Mail relay down"
        assert result.attachmentIds == [1]
        # Optimistic comment appeared, then disappeared after the refetch
        assert seen[0].comments[0].id < 0
        assert store.snapshot.comments == []
        assert store.pending_count == 0
        assert recorder.calls[-1] == ("GET", "/api/tickets/42")

    @pytest.mark.asyncio
    async def test_partial_upload_creates_no_comment(self):
        api, recorder = _mock_api(
            {
                ("GET", "/api/tickets/42"): _ticket_route,
                ("POST", "/api/tickets/42/attachments"): _uploaded_route,
            }
        )
        store = TicketStore(api, 42, snapshot=ticket(42))

        result = await submit_reply(api, 42, "two photos", False, True, _files(2), store=store)

        assert not result.ok
        assert result.error.kind == "upload"
        assert result.error.details["uploadedCount"] == 1
        assert ("POST", "/api/tickets/42/reply") not in recorder.calls
        assert store.snapshot.comments == []
        assert store.pending_count == 0

    @pytest.mark.asyncio
    async def test_generic_message_when_server_says_nothing(self):
        api, _ = _mock_api({("POST", "/api/tickets/42/reply"): lambda r: httpx.Response(500)})

        result = await submit_reply(api, 42, "hello", False, False, [])

        assert result.error.message == "Could not post comment. Please try again."


class TestAgainstTicketApi:
    @pytest.mark.asyncio
    async def test_reply_with_attachments(self, api, make_ticket):
        ticket_id = await make_ticket(status="open")
        store = TicketStore(api, ticket_id)
        await store.load()

        result = await submit_reply(api, ticket_id, "Label attached.", False, True, _files(2), store=store)

        assert result.ok
        assert result.comment.id > 0
        assert result.comment.isOutgoingReply
        assert [a.originalFilename for a in result.comment.attachments] == ["photo-0.jpg", "photo-1.jpg"]
        snap = store.snapshot
        assert [c.id for c in snap.comments] == [result.comment.id]
        assert snap.status is TicketStatus.PENDING_CUSTOMER

    @pytest.mark.asyncio
    async def test_attachments_only_reply_gets_placeholder_text(self, api, make_ticket):
        ticket_id = await make_ticket()

        result = await submit_reply(api, ticket_id, "", False, True, _files(1))

        assert result.ok
        assert result.comment.commentText == "(Attachments only)"

    @pytest.mark.asyncio
    async def test_internal_note_is_never_emailed(self, api, make_ticket):
        ticket_id = await make_ticket(status="open")
        store = TicketStore(api, ticket_id)
        await store.load()

        result = await submit_reply(api, ticket_id, "Checking with the warehouse", True, True, [], store=store)

        assert result.ok
        assert result.comment.isInternalNote
        assert not result.comment.isOutgoingReply
        assert store.snapshot.status is TicketStatus.OPEN

    @pytest.mark.asyncio
    async def test_composer_clears_form_only_on_success(self, api, make_ticket):
        ticket_id = await make_ticket()
        store = TicketStore(api, ticket_id)
        await store.load()
        composer = ReplyComposer(api, store)
        composer.form.text = "Thanks, John!"

        result = await composer.submit()

        assert result.ok
        assert composer.form.is_empty
        assert not composer.is_submitting

    @pytest.mark.asyncio
    async def test_composer_keeps_text_after_failure(self):
        api, _ = _mock_api(
            {
                ("GET", "/api/tickets/42"): _ticket_route,
                ("POST", "/api/tickets/42/reply"): lambda r: httpx.Response(500),
            }
        )
        composer = ReplyComposer(api, TicketStore(api, 42, snapshot=ticket(42)))
        composer.form.text = "Thanks, John!"

        result = await composer.submit()

        assert not result.ok
        assert composer.form.text == "Thanks, John!"

    @pytest.mark.asyncio
    async def test_composer_retry_reuses_uploaded_attachments(self):
        replies = []

        def reply_route(request):
            replies.append(json.loads(request.content))
            if len(replies) == 1:
                return httpx.Response(502, json={"error": "Mail relay down"})
            return httpx.Response(201, json=comment(7, "see attached", 5).model_dump(mode="json"))

        api, recorder = _mock_api(
            {
                ("GET", "/api/tickets/42"): _ticket_route,
                ("POST", "/api/tickets/42/attachments"): _uploaded_route,
                ("POST", "/api/tickets/42/reply"): reply_route,
            }
        )
        composer = ReplyComposer(api, TicketStore(api, 42, snapshot=ticket(42)))
        composer.form.text = "see attached"
        composer.form.add_files(_files(1))

        assert not (await composer.submit()).ok
        assert composer.form.uploaded_attachment_ids == [1]

        result = await composer.submit()

        assert result.ok
        assert recorder.calls.count(("POST", "/api/tickets/42/attachments")) == 1
        assert [r["attachmentIds"] for r in replies] == [[1], [1]]
        assert composer.form.is_empty

    @pytest.mark.asyncio
    async def test_removing_a_file_forgets_uploaded_attachments(self):
        api, recorder = _mock_api(
            {
                ("GET", "/api/tickets/42"): _ticket_route,
                ("POST", "/api/tickets/42/attachments"): _uploaded_route,
                ("POST", "/api/tickets/42/reply"): lambda r: httpx.Response(500),
            }
        )
        composer = ReplyComposer(api, TicketStore(api, 42, snapshot=ticket(42)))
        composer.form.add_files(_files(1))
        await composer.submit()
        assert composer.form.uploaded_attachment_ids == [1]

        composer.form.remove_file(0)

        assert composer.form.uploaded_attachment_ids == []

    @pytest.mark.asyncio
    async def test_composer_keeps_text_typed_while_sending(self):
        composer = None

        def reply_route(request):
            composer.form.text = "Also, the refund is on its way."
            return httpx.Response(201, json=comment(7, "Thanks, John!", 5).model_dump(mode="json"))

        api, _ = _mock_api(
            {
                ("GET", "/api/tickets/42"): _ticket_route,
                ("POST", "/api/tickets/42/attachments"): _uploaded_route,
                ("POST", "/api/tickets/42/reply"): reply_route,
            }
        )
        composer = ReplyComposer(api, TicketStore(api, 42, snapshot=ticket(42)))
        composer.form.text = "Thanks, John!"
        composer.form.add_files(_files(1))

        result = await composer.submit()

        assert result.ok
        assert composer.form.text == "Also, the refund is on its way."
        assert composer.form.files == []


class TestComposeForm:
    def test_internal_note_and_email_are_exclusive(self):
        form = ComposeForm()
        assert form.send_as_email

        form.set_internal_note(True)
        assert not form.send_as_email

        form.set_send_as_email(True)
        assert not form.is_internal_note

    def test_file_limit_is_all_or_nothing(self):
        form = ComposeForm()
        form.add_files(_files(3))

        with pytest.raises(ValidationError):
            form.add_files(_files(3))

        assert len(form.files) == 3

    def test_remove_file_by_position(self):
        form = ComposeForm()
        first = ReplyFile(filename="scan.pdf", content=b"page one", mimeType="application/pdf")
        second = ReplyFile(filename="scan.pdf", content=b"page two", mimeType="application/pdf")
        form.add_files([first, second])

        form.remove_file(1)

        assert [f.content for f in form.files] == [b"page one"]

    def test_use_suggestion_prepares_email_draft(self):
        form = ComposeForm()
        form.set_internal_note(True)

        form.use_suggestion("Hi John, your order #123 shipped.")

        assert form.text == "Hi John, your order #123 shipped."
        assert form.send_as_email
        assert not form.is_internal_note
