import base64
import unittest
from unittest.mock import patch


class BasicAuthParsingTests(unittest.TestCase):
    def test_parse_basic_auth_header_valid(self):
        from leadsync.security import _parse_basic_auth_header

        token = base64.b64encode(b"user:pass").decode("ascii")
        creds = _parse_basic_auth_header(f"Basic {token}")
        self.assertIsNotNone(creds)
        assert creds is not None
        self.assertEqual(creds.username, "user")
        self.assertEqual(creds.password, "pass")

    def test_parse_basic_auth_header_invalid_scheme(self):
        from leadsync.security import _parse_basic_auth_header

        token = base64.b64encode(b"user:pass").decode("ascii")
        creds = _parse_basic_auth_header(f"Bearer {token}")
        self.assertIsNone(creds)

    def test_parse_basic_auth_header_invalid_base64(self):
        from leadsync.security import _parse_basic_auth_header

        creds = _parse_basic_auth_header("Basic !!!notbase64!!!")
        self.assertIsNone(creds)

    def test_parse_basic_auth_header_missing_colon(self):
        from leadsync.security import _parse_basic_auth_header

        token = base64.b64encode(b"userpass").decode("ascii")
        creds = _parse_basic_auth_header(f"Basic {token}")
        self.assertIsNone(creds)


class BearerTokenTests(unittest.TestCase):
    def test_parse_bearer_token(self):
        from leadsync.security import _parse_bearer_token

        self.assertEqual(_parse_bearer_token("Bearer abc123"), "abc123")
        self.assertEqual(_parse_bearer_token("bearer  abc123 "), "abc123")
        self.assertIsNone(_parse_bearer_token("Basic abc123"))
        self.assertIsNone(_parse_bearer_token("Bearer "))
        self.assertIsNone(_parse_bearer_token(None))

    def test_require_partner_token_accepts_matching_token(self):
        from leadsync.config import settings
        from leadsync.security import require_partner_token

        with patch.object(settings, "ingest_api_key", "s3cret"):
            self.assertIsNone(require_partner_token("Bearer s3cret"))

    def test_require_partner_token_rejects_wrong_or_missing_token(self):
        from fastapi import HTTPException

        from leadsync.config import settings
        from leadsync.security import require_partner_token

        with patch.object(settings, "ingest_api_key", "s3cret"):
            for header in ("Bearer nope", None, "Basic s3cret"):
                with self.assertRaises(HTTPException) as ctx:
                    require_partner_token(header)
                self.assertEqual(ctx.exception.status_code, 401)

    def test_require_partner_token_unconfigured_is_503(self):
        from fastapi import HTTPException

        from leadsync.config import settings
        from leadsync.security import require_partner_token

        with patch.object(settings, "ingest_api_key", None):
            with self.assertRaises(HTTPException) as ctx:
                require_partner_token("Bearer anything")
        self.assertEqual(ctx.exception.status_code, 503)


if __name__ == "__main__":
    unittest.main()
