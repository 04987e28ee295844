"""
Test suite for the Resend mailer and the email delivery webhook.
"""

import base64
import hashlib
import hmac
import json
import time
import pytest
from unittest.mock import patch, MagicMock
from sleek_portal import create_app
from sleek_portal.mailer import Mailer, verify_svix_signature

RAW_KEY = b"resend-webhook-signing-key"
SVIX_SECRET = "whsec_" + base64.b64encode(RAW_KEY).decode()

def svix_headers(body: bytes, msg_id="msg_1", timestamp=None, key=RAW_KEY) -> dict:
    timestamp = str(int(time.time())) if timestamp is None else timestamp
    signed = f"{msg_id}.{timestamp}.".encode() + body
    signature = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()
    return {"svix-id": msg_id, "svix-timestamp": timestamp, "svix-signature": f"v1,{signature}"}

class TestMailer:

    @pytest.fixture
    def mailer(self, monkeypatch):
        monkeypatch.setenv('RESEND_API_KEY', 're_test_key')
        monkeypatch.setenv('NOTIFICATION_FROM', 'Sleek Apparels <notifications@sleekapparels.com>')
        monkeypatch.setenv('ADMIN_NOTIFICATION_EMAIL', 'inquiry@sleekapparels.com')
        return Mailer(repo=MagicMock())

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv('RESEND_API_KEY', raising=False)

        with pytest.raises(ValueError):
            Mailer()

    @patch('sleek_portal.mailer.resend.Emails.send')
    def test_send_success_records_delivery(self, mock_send, mailer):
        mock_send.return_value = {"id": "email-123"}

        ok, email_id = mailer.send("buyer@brand.example", "Your quote", "<p>Hi</p>")

        assert ok is True
        assert email_id == "email-123"
        payload = mock_send.call_args[0][0]
        assert payload["to"] == ["buyer@brand.example"]
        assert payload["from"] == 'Sleek Apparels <notifications@sleekapparels.com>'
        mailer.repo.record_email_delivery.assert_called_once_with("email-123", "buyer@brand.example", "Your quote")

    @patch('sleek_portal.mailer.resend.Emails.send')
    def test_send_failure_is_returned(self, mock_send, mailer):
        mock_send.side_effect = RuntimeError("invalid api key")

        ok, error = mailer.send("buyer@brand.example", "Your quote", "<p>Hi</p>")

        assert ok is False
        assert error == "invalid api key"
        mailer.repo.record_email_delivery.assert_not_called()

    @patch('sleek_portal.mailer.resend.Emails.send')
    def test_tracking_failure_does_not_fail_send(self, mock_send, mailer):
        mock_send.return_value = {"id": "email-1"}
        mailer.repo.record_email_delivery.side_effect = RuntimeError("db down")

        assert mailer.send("a@b.co", "s", "h") == (True, "email-1")

    @patch('sleek_portal.mailer.resend.Emails.send')
    def test_notify_admin(self, mock_send, mailer):
        mock_send.return_value = {"id": "email-2"}

        ok, _ = mailer.notify_admin("New lead", "<p>lead</p>", reply_to="lead@brand.example")

        assert ok is True
        payload = mock_send.call_args[0][0]
        assert payload["to"] == ["inquiry@sleekapparels.com"]
        assert payload["reply_to"] == "lead@brand.example"

class TestSvixSignature:

    def test_valid(self):
        body = b'{"type":"email.delivered"}'
        headers = svix_headers(body)

        assert verify_svix_signature(SVIX_SECRET, headers["svix-id"], headers["svix-timestamp"],
                                     headers["svix-signature"], body)

    def test_one_of_several_signatures(self):
        body = b'{}'
        headers = svix_headers(body)
        combined = "v1,bm90LXRoaXMtb25l " + headers["svix-signature"]

        assert verify_svix_signature(SVIX_SECRET, "msg_1", headers["svix-timestamp"], combined, body)

    def test_invalid(self):
        body = b'{}'
        headers = svix_headers(body, key=b"another-key")

        assert not verify_svix_signature(SVIX_SECRET, "msg_1", headers["svix-timestamp"], headers["svix-signature"], body)

    def test_plain_secret(self):
        body = b'{}'
        headers = svix_headers(body, key=b"plain-secret")

        assert verify_svix_signature("plain-secret", "msg_1", headers["svix-timestamp"], headers["svix-signature"], body)

    def test_stale_timestamp(self):
        body = b'{"type":"email.delivered"}'
        headers = svix_headers(body, timestamp="1718000000")

        assert not verify_svix_signature(SVIX_SECRET, "msg_1", "1718000000", headers["svix-signature"], body,
                                         now=1718000000 + 301)
        assert verify_svix_signature(SVIX_SECRET, "msg_1", "1718000000", headers["svix-signature"], body,
                                     now=1718000000 + 299)

    def test_non_numeric_timestamp(self):
        body = b'{}'
        headers = svix_headers(body, timestamp="yesterday")

        assert not verify_svix_signature(SVIX_SECRET, "msg_1", "yesterday", headers["svix-signature"], body)

class TestResendWebhookEndpoint:

    @pytest.fixture
    def client(self, monkeypatch):
        monkeypatch.setenv('RESEND_WEBHOOK_SECRET', SVIX_SECRET)
        app = create_app()
        app.config['TESTING'] = True
        return app.test_client()

    def test_missing_headers(self, client):
        response = client.post('/api/webhooks/resend', data=b'{}')

        assert response.status_code == 400
        assert json.loads(response.data)['error'] == "Missing webhook headers"

    def test_bad_signature(self, client):
        body = b'{"type": "email.delivered"}'

        response = client.post('/api/webhooks/resend', data=body, headers=svix_headers(body, key=b"wrong"))

        assert response.status_code == 401

    @patch('sleek_portal.api.get_supabase_repo')
    def test_replayed_event_rejected(self, mock_repo, client):
        body = json.dumps({"type": "email.delivered", "data": {"email_id": "email-123"}}).encode()
        headers = svix_headers(body, timestamp=str(int(time.time()) - 3600))

        response = client.post('/api/webhooks/resend', data=body, headers=headers)

        assert response.status_code == 401
        mock_repo.return_value.update_email_delivery.assert_not_called()

    def test_secret_not_configured(self, client, monkeypatch):
        monkeypatch.delenv('RESEND_WEBHOOK_SECRET')
        body = b'{}'

        response = client.post('/api/webhooks/resend', data=body, headers=svix_headers(body))

        assert response.status_code == 500

    @patch('sleek_portal.api.get_supabase_repo')
    def test_delivered_event(self, mock_repo, client):
        repo = MagicMock()
        mock_repo.return_value = repo
        body = json.dumps({"type": "email.delivered", "data": {"email_id": "email-123"}}).encode()

        response = client.post('/api/webhooks/resend', data=body, headers=svix_headers(body))

        assert response.status_code == 200
        assert json.loads(response.data) == {"received": True}
        repo.update_email_delivery.assert_called_once_with(
            "email-123", {"delivery_status": "delivered", "delivery_error": None})

    @patch('sleek_portal.api.get_supabase_repo')
    def test_bounced_event_keeps_details(self, mock_repo, client):
        repo = MagicMock()
        mock_repo.return_value = repo
        data = {"email_id": "email-9", "bounce": {"type": "hard"}}
        body = json.dumps({"type": "email.bounced", "data": data}).encode()

        response = client.post('/api/webhooks/resend', data=body, headers=svix_headers(body))

        assert response.status_code == 200
        email_id, values = repo.update_email_delivery.call_args[0]
        assert email_id == "email-9"
        assert values["delivery_status"] == "bounced"
        assert json.loads(values["delivery_error"]) == data

    @patch('sleek_portal.api.get_supabase_repo')
    def test_unhandled_event(self, mock_repo, client):
        repo = MagicMock()
        mock_repo.return_value = repo
        body = json.dumps({"type": "email.opened", "data": {"email_id": "email-1"}}).encode()

        response = client.post('/api/webhooks/resend', data=body, headers=svix_headers(body))

        assert response.status_code == 200
        repo.update_email_delivery.assert_not_called()
