"""Unit tests for agent protocol models and the frame codec.

Tests Pydantic serialization, the camelCase wire names, the Closed sentinel
and the narrow accept-set check. No channels, no sockets.
"""

import json

import pytest
from hypothesis import given, settings
from hypothesis.strategies import booleans, integers, lists, text
from pydantic import ValidationError

from flatvm_agent.agent_protocol import (
    GUEST_EVENT_KINDS,
    HOST_EVENT_KINDS,
    AckMessage,
    AppExitCodeMessage,
    ClipboardEventMessage,
    ClosedMessage,
    DesktopNotificationMessage,
    MountRequest,
    ReadyMessage,
    RunRequest,
    decode_frame,
    encode_frame,
    expect_message,
)
from flatvm_agent.exceptions import ProtocolError
from flatvm_agent.models import SharedDirDescriptor, SharedDirKind

# ============================================================================
# Wire Format
# ============================================================================


class TestWireFormat:
    """Exact frames produced by encode_frame()."""

    def test_ready_frame(self) -> None:
        assert encode_frame(ReadyMessage(version="1.0")) == b'{"type":"ready","version":"1.0"}\n'

    def test_ack_without_request_id(self) -> None:
        """requestId is left out entirely when not set."""
        assert encode_frame(AckMessage(status=0)) == b'{"type":"ack","status":0}\n'

    def test_ack_with_request_id(self) -> None:
        assert encode_frame(AckMessage(status=3, request_id=7)) == b'{"type":"ack","status":3,"requestId":7}\n'

    def test_mount_request_uses_camel_case(self, documents_share: SharedDirDescriptor) -> None:
        data = json.loads(encode_frame(MountRequest(shared_dir=documents_share, request_id=1)))
        assert data == {
            "type": "mount_request",
            "sharedDir": {
                "kind": "app_dir",
                "ownerApp": "editor",
                "sourcePath": "/home/u/Documents",
                "mountTag": "shareddir0",
                "readOnly": False,
            },
            "requestId": 1,
        }

    def test_run_request_uses_camel_case(self) -> None:
        data = json.loads(encode_frame(RunRequest(app="editor", run_as_user=True, start_desktop_session=False)))
        assert data == {
            "type": "run_request",
            "app": "editor",
            "runAsUser": True,
            "startDesktopSession": False,
        }

    def test_desktop_notification_defaults(self) -> None:
        data = json.loads(encode_frame(DesktopNotificationMessage(summary="Saved")))
        assert data == {
            "type": "desktop_notification",
            "appName": "",
            "replacesId": 0,
            "appIcon": "",
            "summary": "Saved",
            "body": "",
            "actions": [],
            "expireTimeout": -1,
        }

    def test_newline_in_payload_is_escaped(self) -> None:
        """A multi-line clipboard payload still produces exactly one line."""
        frame = encode_frame(ClipboardEventMessage(data="line1\nline2\r\n"))
        assert frame.count(b"\n") == 1
        assert frame.endswith(b"\n")
        assert decode_frame(frame) == ClipboardEventMessage(data="line1\nline2\r\n")

    def test_utf8_payload_is_not_ascii_escaped(self) -> None:
        frame = encode_frame(ClipboardEventMessage(data="héllo 世界"))
        assert "héllo 世界".encode() in frame

    def test_closed_cannot_be_encoded(self) -> None:
        with pytest.raises(ProtocolError):
            encode_frame(ClosedMessage())


# ============================================================================
# Decoding
# ============================================================================


class TestDecodeFrame:
    """decode_frame() results and failures."""

    def test_zero_bytes_is_closed(self) -> None:
        assert isinstance(decode_frame(b""), ClosedMessage)

    def test_blank_line_is_protocol_error(self) -> None:
        """Only a zero-byte read means closed; an empty frame is malformed."""
        with pytest.raises(ProtocolError):
            decode_frame(b"\n")

    def test_invalid_json(self) -> None:
        with pytest.raises(ProtocolError) as exc_info:
            decode_frame(b"{not json\n")
        assert exc_info.value.context["raw"] == b"{not json"

    def test_unknown_type(self) -> None:
        with pytest.raises(ProtocolError):
            decode_frame(b'{"type":"shutdown"}\n')

    def test_closed_is_never_decoded(self) -> None:
        """The sentinel only comes from a zero-byte read."""
        with pytest.raises(ProtocolError):
            decode_frame(b'{"type":"closed"}\n')

    def test_missing_field(self) -> None:
        with pytest.raises(ProtocolError):
            decode_frame(b'{"type":"ack"}\n')

    def test_wrong_field_type(self) -> None:
        with pytest.raises(ProtocolError):
            decode_frame(b'{"type":"app_exit_code","code":"one"}\n')

    def test_frame_without_terminator(self) -> None:
        """Trailing bytes read at EOF are decoded like a full frame."""
        assert decode_frame(b'{"type":"app_exit_code","code":1}') == AppExitCodeMessage(code=1)

    def test_unknown_fields_ignored(self) -> None:
        assert decode_frame(b'{"type":"ready","version":"2.0","features":["x"]}\n') == ReadyMessage(version="2.0")

    def test_snake_case_names_accepted(self) -> None:
        msg = decode_frame(b'{"type":"run_request","app":"editor","run_as_user":true}\n')
        assert msg == RunRequest(app="editor", run_as_user=True)

    def test_mount_request(self, documents_share: SharedDirDescriptor) -> None:
        msg = decode_frame(
            b'{"type":"mount_request","sharedDir":{"kind":"app_dir","ownerApp":"editor",'
            b'"sourcePath":"/home/u/Documents","mountTag":"shareddir0","readOnly":false}}\n'
        )
        assert msg == MountRequest(shared_dir=documents_share)
        assert msg.request_id is None  # type: ignore[union-attr]


# ============================================================================
# Models
# ============================================================================


class TestModels:
    def test_messages_are_frozen(self) -> None:
        msg = AckMessage(status=0)
        with pytest.raises(ValidationError):
            msg.status = 1  # type: ignore[misc]

    def test_run_request_requires_app(self) -> None:
        with pytest.raises(ValidationError):
            RunRequest(app="")

    def test_shared_dir_requires_mount_tag(self) -> None:
        with pytest.raises(ValidationError):
            SharedDirDescriptor(kind=SharedDirKind.USER_DIR, owner_app="x", source_path="/x", mount_tag="")

    def test_shared_dir_kind_values(self) -> None:
        assert [k.value for k in SharedDirKind] == ["system_dir", "user_dir", "app_dir"]

    def test_accept_sets(self) -> None:
        assert AckMessage not in HOST_EVENT_KINDS
        assert AckMessage in GUEST_EVENT_KINDS
        assert ReadyMessage not in HOST_EVENT_KINDS + GUEST_EVENT_KINDS


class TestExpectMessage:
    def test_accepts_listed_kind(self) -> None:
        msg = ReadyMessage(version="1.0")
        assert expect_message(msg, ReadyMessage, during="handshake") is msg

    def test_rejects_other_kind(self) -> None:
        with pytest.raises(ProtocolError) as exc_info:
            expect_message(AckMessage(status=0), ReadyMessage, during="handshake")
        assert "AckMessage" in exc_info.value.message
        assert exc_info.value.context == {"during": "handshake", "received": "ack"}


# ============================================================================
# Round-Trip Properties
# ============================================================================


class TestRoundTrip:
    """decode_frame(encode_frame(m)) == m for arbitrary payloads."""

    @given(data=text())
    @settings(max_examples=200)
    def test_clipboard_text(self, data: str) -> None:
        frame = encode_frame(ClipboardEventMessage(data=data))
        assert frame.count(b"\n") == 1
        assert decode_frame(frame) == ClipboardEventMessage(data=data)

    @given(
        app=text(min_size=1),
        as_user=booleans(),
        desktop=booleans(),
        request_id=integers(min_value=1, max_value=2**53),
    )
    @settings(max_examples=100)
    def test_run_request(self, app: str, as_user: bool, desktop: bool, request_id: int) -> None:
        msg = RunRequest(app=app, run_as_user=as_user, start_desktop_session=desktop, request_id=request_id)
        assert decode_frame(encode_frame(msg)) == msg

    @given(summary=text(), body=text(), actions=lists(text(), max_size=4), timeout=integers(-1, 2**31 - 1))
    @settings(max_examples=100)
    def test_desktop_notification(self, summary: str, body: str, actions: list[str], timeout: int) -> None:
        msg = DesktopNotificationMessage(summary=summary, body=body, actions=actions, expire_timeout=timeout)
        assert decode_frame(encode_frame(msg)) == msg

    @given(code=integers(min_value=-(2**31), max_value=2**31 - 1))
    def test_exit_code(self, code: int) -> None:
        assert decode_frame(encode_frame(AppExitCodeMessage(code=code))) == AppExitCodeMessage(code=code)
