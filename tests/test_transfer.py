"""Tests for scpclient/transfer.py — the upload and download state machines."""

from __future__ import annotations

import io

import pytest

from scpclient.errors import FormatError, ProtocolError, TransportError
from scpclient.progress import ProgressReader, ProgressTracker
from scpclient.transfer import copy_n, download, download_preserve, upload


# ---------------------------------------------------------------------------
# copy_n
# ---------------------------------------------------------------------------


class TestCopyN:
    def test_copies_exact_count(self) -> None:
        src = io.BytesIO(b"abcdefgh")
        dst = io.BytesIO()
        assert copy_n(dst, src, 5, chunk_size=2) == 5
        assert dst.getvalue() == b"abcde"
        assert src.read() == b"fgh"

    def test_zero_size_reads_nothing(self) -> None:
        src = io.BytesIO(b"abc")
        dst = io.BytesIO()
        assert copy_n(dst, src, 0) == 0
        assert src.tell() == 0

    def test_short_source_raises(self) -> None:
        with pytest.raises(TransportError, match="3 of 10"):
            copy_n(io.BytesIO(), io.BytesIO(b"abc"), 10)

    def test_short_writes_are_retried(self) -> None:
        class _Trickle(io.RawIOBase):
            """Unbuffered sink that accepts at most two bytes per write."""

            def __init__(self) -> None:
                self.data = bytearray()

            def writable(self) -> bool:
                return True

            def write(self, b) -> int:
                accepted = bytes(b[:2])
                self.data += accepted
                return len(accepted)

        sink = _Trickle()
        assert copy_n(sink, io.BytesIO(b"abcdefg"), 7, chunk_size=5) == 7
        assert bytes(sink.data) == b"abcdefg"

    def test_sink_accepting_nothing_raises(self) -> None:
        class _Stuck(io.RawIOBase):
            def writable(self) -> bool:
                return True

            def write(self, b) -> int:
                return 0

        with pytest.raises(TransportError, match="accepted no bytes"):
            copy_n(_Stuck(), io.BytesIO(b"abc"), 3)


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


class TestUpload:
    def test_happy_path_wire_bytes(self, make_session) -> None:
        session = make_session(b"\x00\x00")
        upload(session, io.BytesIO(b"hello"), "/srv/data/test.txt", "0644", 5)
        assert session.written == b"C0644 5 test.txt\nhello\x00"

    def test_header_failure_aborts_before_payload(self, make_session) -> None:
        """A failed header ack stops the exchange: no payload, no terminator."""
        session = make_session(b"\x02no space\n")
        with pytest.raises(ProtocolError) as excinfo:
            upload(session, io.BytesIO(b"hello"), "/srv/test.txt", "0644", 5)
        assert "no space" in str(excinfo.value)
        assert session.written == b"C0644 5 test.txt\n"

    def test_final_failure_surfaces_peer_message(self, make_session) -> None:
        session = make_session(b"\x00\x02scp: write failed\n")
        with pytest.raises(ProtocolError, match="^scp: write failed$"):
            upload(session, io.BytesIO(b"hello"), "test.txt", 0o644, 5)

    def test_header_warning_aborts_before_payload(self, make_session) -> None:
        """A sink that cannot open the file answers 0x01; no data may follow."""
        session = make_session(
            b"\x01scp: /srv/ro/a.txt: Permission denied\n"
            b"\x01scp: protocol error: expected control record\n"
        )
        with pytest.raises(ProtocolError, match="^scp: /srv/ro/a.txt: Permission denied$"):
            upload(session, io.BytesIO(b"hi"), "/srv/ro/a.txt", "0600", 2)
        assert session.written == b"C0600 2 a.txt\n"

    def test_payload_warning_is_fatal(self, make_session) -> None:
        session = make_session(b"\x00\x01scp: short write\n")
        with pytest.raises(ProtocolError, match="short write"):
            upload(session, io.BytesIO(b"hi"), "a.txt", "0600", 2)

    def test_short_source_is_transport_error(self, make_session) -> None:
        session = make_session(b"\x00\x00")
        with pytest.raises(TransportError):
            upload(session, io.BytesIO(b"hel"), "a.txt", "0644", 5)
        assert not session.written.endswith(b"\x00")

    def test_missing_ack_is_transport_error(self, make_session) -> None:
        session = make_session(b"")
        with pytest.raises(TransportError):
            upload(session, io.BytesIO(b"x"), "a.txt", "0644", 1)

    def test_progress_reported_on_source(self, make_session) -> None:
        session = make_session(b"\x00\x00")
        fractions: list[float] = []
        payload = b"x" * 100_000
        upload(session, io.BytesIO(payload), "big.bin", "0644", len(payload), on_progress=fractions.append)
        assert fractions == sorted(fractions)
        assert fractions[-1] == pytest.approx(1.0)
        assert session.written == b"C0644 100000 big.bin\n" + payload + b"\x00"

    def test_pass_thru_wraps_source(self, make_session) -> None:
        session = make_session(b"\x00\x00")
        seen: list[int] = []

        def _pass_thru(reader, total):
            seen.append(total)
            return ProgressReader(reader, ProgressTracker(total=total))

        upload(session, io.BytesIO(b"abc"), "a", "0644", 3, pass_thru=_pass_thru)
        assert seen == [3]


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


class TestDownload:
    def test_happy_path(self, make_session) -> None:
        session = make_session(b"C0644 5 test.txt\nhello")
        sink = io.BytesIO()
        infos = download(session, sink)
        assert sink.getvalue() == b"hello"
        assert (infos.filename, infos.size, infos.permissions) == ("test.txt", 5, 0o644)
        assert infos.mtime is None
        assert session.written == b"\x00\x00\x00"

    def test_zero_size_still_acks_three_times(self, make_session) -> None:
        session = make_session(b"C0644 0 empty\n")
        sink = io.BytesIO()
        infos = download(session, sink)
        assert infos.size == 0
        assert sink.getvalue() == b""
        assert session.written == b"\x00\x00\x00"

    def test_failure_before_header(self, make_session) -> None:
        session = make_session(b"\x02scp: missing.txt: No such file or directory\n")
        with pytest.raises(ProtocolError, match="No such file"):
            download(session, io.BytesIO())
        assert session.written == b"\x00"

    def test_warning_before_header_aborts(self, make_session) -> None:
        session = make_session(b"\x01scp: missing.txt: No such file or directory\n")
        with pytest.raises(ProtocolError):
            download(session, io.BytesIO())

    def test_bad_header_is_format_error(self, make_session) -> None:
        session = make_session(b"Cxyz 5 a\nhello")
        with pytest.raises(FormatError):
            download(session, io.BytesIO())

    def test_truncated_body(self, make_session) -> None:
        session = make_session(b"C0644 10 a\nhello")
        with pytest.raises(TransportError):
            download(session, io.BytesIO())
        assert session.written == b"\x00\x00"

    def test_progress_fractions(self, make_session) -> None:
        payload = bytes(range(256)) * 400
        session = make_session(b"C0644 %d data.bin\n" % len(payload) + payload)
        fractions: list[float] = []
        sink = io.BytesIO()
        download(session, sink, on_progress=fractions.append)
        assert sink.getvalue() == payload
        assert len(fractions) > 1
        assert all(a <= b for a, b in zip(fractions, fractions[1:]))
        assert fractions[-1] == pytest.approx(1.0)

    def test_progress_not_called_for_empty_file(self, make_session) -> None:
        session = make_session(b"C0644 0 empty\n")
        fractions: list[float] = []
        download(session, io.BytesIO(), on_progress=fractions.append)
        assert fractions == []


class TestDownloadPreserve:
    def test_times_merged_into_infos(self, make_session) -> None:
        session = make_session(b"T1700000000 0 1700000001 0\nC0644 5 test.txt\nhello")
        sink = io.BytesIO()
        infos = download_preserve(session, sink)
        assert infos.mtime == 1700000000
        assert infos.atime == 1700000001
        assert infos.size == 5
        assert infos.permissions == 0o644
        assert infos.filename == "test.txt"
        assert sink.getvalue() == b"hello"
        assert session.written == b"\x00\x00\x00\x00"

    def test_failure_on_time_line_aborts(self, make_session) -> None:
        session = make_session(b"\x02scp: secret: Permission denied\n")
        with pytest.raises(ProtocolError, match="Permission denied"):
            download_preserve(session, io.BytesIO())

    def test_failure_on_header_aborts(self, make_session) -> None:
        session = make_session(b"T1 0 2 0\n\x02scp: read error\n")
        with pytest.raises(ProtocolError, match="read error"):
            download_preserve(session, io.BytesIO())
        assert session.written == b"\x00\x00"

    def test_missing_time_line_is_format_error(self, make_session) -> None:
        session = make_session(b"C0644 5 test.txt\nhello")
        with pytest.raises(FormatError):
            download_preserve(session, io.BytesIO())

    def test_zero_size_full_ack_sequence(self, make_session) -> None:
        session = make_session(b"T5 0 6 0\nC0600 0 empty\n")
        infos = download_preserve(session, io.BytesIO())
        assert (infos.size, infos.mtime, infos.atime) == (0, 5, 6)
        assert session.written == b"\x00\x00\x00\x00"
