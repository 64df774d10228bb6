import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from inbox_sync.backend import BackendClient, BackendError, MediaAttachment, SendRejected


def _create_fake_app(state: dict) -> web.Application:
    routes = web.RouteTableDef()

    def _record(name: str, payload: object) -> None:
        state.setdefault(name, []).append(payload)

    @routes.get("/api/conversations")
    async def conversations(request: web.Request) -> web.Response:
        _record("auth", request.headers.get("Authorization"))
        return web.json_response([{"number": "+919876543210", "name": "Asha", "unread": 2}, "junk"])

    @routes.get("/api/sms/messages/{number}")
    async def messages(request: web.Request) -> web.Response:
        number = request.match_info["number"]
        _record("history", number)
        if number == "0000000000":
            return web.json_response({"success": False, "message": "unknown contact"})
        return web.json_response(
            {"success": True, "messages": [{"sid": "SM1", "from": "+919876543210", "body": "hi"}]}
        )

    @routes.post("/api/sms/send")
    async def send(request: web.Request) -> web.Response:
        body = await request.json()
        _record("send", body)
        if body["message"] == "blocked":
            return web.json_response({"success": False, "message": "Recipient opted out"})
        return web.json_response({"success": True, "sid": "SM123", "messageStatus": "queued"})

    @routes.post("/api/sms/send-media")
    async def send_media(request: web.Request) -> web.Response:
        form = await request.post()
        upload = form["mediaFile"]
        _record("media", {"to": form["toNumber"], "filename": upload.filename, "size": len(upload.file.read())})
        return web.json_response({"success": True, "sid": "MM1", "messageStatus": "sent"})

    @routes.post("/api/conversations/mark-read")
    async def mark_read(request: web.Request) -> web.Response:
        body = await request.json()
        _record("mark_read", body)
        if state.get("fail_mark_read"):
            return web.json_response({"error": "unavailable"}, status=503)
        return web.json_response({"success": True})

    @routes.post("/api/messages/status-update")
    async def status_update(request: web.Request) -> web.Response:
        _record("status", await request.json())
        return web.json_response({"success": True})

    @routes.post("/api/messages/delete")
    async def delete_message(request: web.Request) -> web.Response:
        _record("delete", await request.json())
        return web.json_response({"success": True})

    @routes.post("/api/conversations/delete")
    async def delete_conversations(request: web.Request) -> web.Response:
        _record("delete_conversations", await request.json())
        return web.json_response({"success": True})

    @routes.post("/api/sms/messages/clear")
    async def clear(request: web.Request) -> web.Response:
        _record("clear", await request.json())
        return web.json_response({"success": True})

    @routes.get("/api/presence/{number}")
    async def presence(request: web.Request) -> web.Response:
        return web.json_response({"online": True, "lastSeen": None})

    @routes.get("/api/from-numbers")
    async def from_numbers(request: web.Request) -> web.Response:
        return web.json_response([{"phoneNumber": "+911111111111"}, "+912222222222", {"other": 1}])

    @routes.get("/api/broken")
    async def broken(request: web.Request) -> web.Response:
        return web.Response(text="<html>oops</html>", content_type="text/html")

    app = web.Application()
    app.add_routes(routes)
    return app


class BackendClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.state: dict = {}
        self.server = TestServer(_create_fake_app(self.state))
        await self.server.start_server()
        self.client = BackendClient(str(self.server.make_url("/api")), headers={"Authorization": "Bearer tok"})

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def test_list_conversations_sends_auth_and_filters_junk(self):
        items = await self.client.list_conversations()

        self.assertEqual(items, [{"number": "+919876543210", "name": "Asha", "unread": 2}])
        self.assertEqual(self.state["auth"], ["Bearer tok"])

    async def test_list_messages_uses_digits_of_identity(self):
        items = await self.client.list_messages("+91 98765 43210")

        self.assertEqual(items[0]["sid"], "SM1")
        self.assertEqual(self.state["history"], ["919876543210"])

        with self.assertRaises(BackendError):
            await self.client.list_messages("0000000000")

    async def test_send_message_returns_receipt(self):
        receipt = await self.client.send_message("+919876543210", "hello", from_number="+911111111111")

        self.assertEqual(receipt.message_id, "SM123")
        self.assertEqual(receipt.status, "queued")
        self.assertEqual(
            self.state["send"],
            [{"toNumber": "+919876543210", "message": "hello", "fromNumber": "+911111111111"}],
        )

    async def test_send_rejection_raises_send_rejected(self):
        with self.assertRaises(SendRejected) as ctx:
            await self.client.send_message("+919876543210", "blocked", from_number="+911111111111")
        self.assertEqual(str(ctx.exception), "Recipient opted out")

    async def test_send_with_media_uses_multipart(self):
        media = MediaAttachment(content=b"\x89PNG....", filename="pic.png", content_type="image/png")

        receipt = await self.client.send_message("+919876543210", "", from_number="+911111111111", media=media)

        self.assertEqual(receipt.message_id, "MM1")
        self.assertEqual(self.state["media"], [{"to": "+919876543210", "filename": "pic.png", "size": 8}])

    async def test_http_error_carries_status_and_message(self):
        self.state["fail_mark_read"] = True

        with self.assertRaises(BackendError) as ctx:
            await self.client.mark_read("+919876543210")

        self.assertEqual(ctx.exception.status, 503)
        self.assertEqual(str(ctx.exception), "unavailable")
        self.assertEqual(self.state["mark_read"], [{"contactNumber": "+919876543210"}])

    async def test_malformed_json_is_a_backend_error(self):
        with self.assertRaises(BackendError):
            await self.client._request("GET", "/broken")

    async def test_write_operations_post_expected_bodies(self):
        await self.client.update_message_status(["SM1", "SM2"], "read")
        await self.client.update_message_status([], "read")
        await self.client.delete_message("SM1")
        await self.client.delete_conversations(["+919876543210"])
        await self.client.clear_messages("+919876543210")

        self.assertEqual(self.state["status"], [{"sids": ["SM1", "SM2"], "status": "read"}])
        self.assertEqual(self.state["delete"], [{"messageSid": "SM1"}])
        self.assertEqual(self.state["delete_conversations"], [{"numbers": ["+919876543210"]}])
        self.assertEqual(self.state["clear"], [{"number": "+919876543210"}])

    async def test_presence_and_sender_numbers(self):
        presence = await self.client.fetch_presence("+919876543210")
        self.assertTrue(presence["online"])

        numbers = await self.client.list_sender_numbers()
        self.assertEqual(numbers, ["+911111111111", "+912222222222"])


class BackendTransportErrorTests(unittest.IsolatedAsyncioTestCase):
    async def test_connection_refused_becomes_backend_error(self):
        client = BackendClient("http://127.0.0.1:1/api", timeout_s=2)
        try:
            with self.assertRaises(BackendError):
                await client.list_conversations()
        finally:
            await client.close()


if __name__ == "__main__":
    unittest.main()
