import json
import logging
import unittest
from datetime import datetime
from unittest.mock import patch

import httpx

logging.disable(logging.CRITICAL)


def _client(handler, **kwargs):
    from leadsync.services.remote_client import RemoteClient

    return RemoteClient(
        "https://partner.example/api/",
        "token-123",
        source_tag="gestao_scouter",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class RemoteClientTests(unittest.TestCase):
    def test_requires_base_url(self):
        from leadsync.services.remote_client import RemoteClient

        with self.assertRaises(ValueError):
            RemoteClient("", "token", source_tag="x")

    def test_push_posts_record_source_and_operation(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"status": "applied", "id": "1"})

        with _client(handler) as client:
            result = client.push({"id": "1", "payload": {}, "updated_at": "2024-05-01T12:00:00"}, "insert")

        self.assertEqual(result["status"], "applied")
        request = seen[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(request.url.path, "/api/sync-ingest")
        self.assertEqual(request.headers["Authorization"], "Bearer token-123")
        body = json.loads(request.content)
        self.assertEqual(body["source"], "gestao_scouter")
        self.assertEqual(body["operation"], "insert")
        self.assertEqual(body["record"]["id"], "1")

    def test_server_errors_and_throttling_are_transient(self):
        from leadsync.services.remote_client import TransientRemoteError

        for status in (500, 502, 503, 408, 429):
            with _client(lambda request, s=status: httpx.Response(s, text="busy")) as client:
                with self.assertRaises(TransientRemoteError) as ctx:
                    client.push({"id": "1"}, "update")
            self.assertEqual(ctx.exception.status_code, status)

    def test_client_errors_are_permanent(self):
        from leadsync.services.remote_client import PermanentRemoteError

        for status in (400, 401, 403, 404, 422):
            with _client(lambda request, s=status: httpx.Response(s, text="nope")) as client:
                with self.assertRaises(PermanentRemoteError) as ctx:
                    client.push({"id": "1"}, "update")
            self.assertEqual(ctx.exception.status_code, status)

    def test_timeout_is_transient(self):
        from leadsync.services.remote_client import TransientRemoteError

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with _client(handler) as client:
            with self.assertRaises(TransientRemoteError):
                client.push({"id": "1"}, "update")

    def test_push_is_not_retried_inline(self):
        from leadsync.services.remote_client import TransientRemoteError

        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        with _client(handler) as client:
            with self.assertRaises(TransientRemoteError):
                client.push({"id": "1"}, "update")
        self.assertEqual(len(calls), 1)

    def test_list_records_pages_until_short_page(self):
        pages = []

        def handler(request):
            params = dict(request.url.params)
            pages.append(params)
            offset = int(params["offset"])
            size = 2 if offset < 4 else 1
            records = [{"id": str(offset + i)} for i in range(size)]
            return httpx.Response(200, json={"records": records})

        with _client(handler) as client:
            records = client.list_records(
                updated_after=datetime(2024, 5, 1, 12, 0, 0), page_size=2
            )

        self.assertEqual([r["id"] for r in records], ["0", "1", "2", "3", "4"])
        self.assertEqual([p["offset"] for p in pages], ["0", "2", "4"])
        self.assertEqual(pages[0]["updated_after"], "2024-05-01T12:00:00+00:00")

    def test_reads_retry_transient_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(502)
            return httpx.Response(200, json={"record": {"id": "9"}})

        with patch("leadsync.services.remote_client.time.sleep") as sleep:
            with _client(handler) as client:
                record = client.get_record("9")

        self.assertEqual(record, {"id": "9"})
        self.assertEqual(len(calls), 2)
        sleep.assert_called_once()

    def test_get_record_returns_none_on_404(self):
        with _client(lambda request: httpx.Response(404, json={"detail": "Record not found"})) as client:
            self.assertIsNone(client.get_record("missing"))

    def test_build_remote_client_uses_system_tag(self):
        from leadsync.services.remote_client import build_remote_client
        from sync_fixtures import make_config

        config = make_config(
            remote_base_url="https://partner.example", remote_api_key="k", system_tag="me"
        )
        client = build_remote_client(config, transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        try:
            self.assertEqual(client.source_tag, "me")
            self.assertEqual(client.base_url, "https://partner.example")
        finally:
            client.close()


if __name__ == "__main__":
    unittest.main()
