"""
Tests for the FRS Client

This test suite verifies:
- bbox / face id / video status normalization
- 1:1, 1:N and N:N orchestration against a fake FRS
- Upstream error mapping to FRSError
- The video submission sequence

Run with: pytest tests/test_frs_client.py -v
"""

import asyncio

import httpx
import pytest

from core.frs_client import (
    FRSClient,
    FRSError,
    ImageInput,
    NoFaceDetectedError,
    format_face_id,
    normalize_bbox,
    normalize_video_status,
)


def face(name):
    content = b"NOFACE" if name is None else f"FACE={name}".encode("ascii")
    return ImageInput(content=content, filename=f"{name}.jpg")


class TestHelpers:
    """Tests for the pure helpers."""

    def test_bbox_list(self):
        assert normalize_bbox([1, 2, 3, 4]) == {"left": 1, "top": 2, "right": 3, "bottom": 4}

    def test_bbox_xywh(self):
        assert normalize_bbox({"x": 10, "y": 20, "w": 5, "h": 6}) == {
            "left": 10, "top": 20, "right": 15, "bottom": 26,
        }

    def test_bbox_passthrough(self):
        ltrb = {"left": 1, "top": 2, "right": 3, "bottom": 4}
        assert normalize_bbox(ltrb) is ltrb
        assert normalize_bbox(None) is None
        assert normalize_bbox("odd") == "odd"

    @pytest.mark.parametrize("face_id,expected", [
        ("abc", "detection:abc"),
        ("detection:abc", "detection:abc"),
        ("faceevent:12", "faceevent:12"),
    ])
    def test_format_face_id(self, face_id, expected):
        assert format_face_id(face_id) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("created", "pending"),
        ("QUEUED", "processing"),
        ("finished", "completed"),
        ("failed", "failed"),
        ("archived", "archived"),
        (None, None),
    ])
    def test_video_status(self, raw, expected):
        assert normalize_video_status(raw) == expected


class TestSearch:
    """Tests for the face-search operations."""

    def test_one_to_one_match(self, frs, fake_frs):
        result = asyncio.run(frs.one_to_one(face("alice"), face("alice")))

        assert result["match"] is True
        assert result["confidence"] == 0.95
        assert result["source"]["face_id"].startswith("alice-")
        verify = [r for r in fake_frs.requests if r.url.path == "/verify"][0]
        assert verify.url.params["object1"].startswith("detection:alice-")
        assert verify.headers["Authorization"] == "Token test-token"

    def test_one_to_one_no_match(self, frs):
        result = asyncio.run(frs.one_to_one(face("alice"), face("bob")))
        assert result["match"] is False
        assert result["confidence"] == 0.30

    @pytest.mark.parametrize("source,target,which", [
        (None, "alice", "source"),
        ("alice", None, "target"),
    ])
    def test_one_to_one_no_face(self, frs, source, target, which):
        with pytest.raises(NoFaceDetectedError) as exc:
            asyncio.run(frs.one_to_one(face(source), face(target)))
        assert which in exc.value.message

    def test_one_to_n_sorted_with_errors(self, frs):
        result = asyncio.run(frs.one_to_n(face("alice"), [face("bob"), face(None), face("alice")]))

        assert result["total_targets"] == 3
        assert result["match_count"] == 1
        assert result["results"][0]["index"] == 2
        assert result["results"][0]["match"] is True
        no_face = [r for r in result["results"] if r["index"] == 1][0]
        assert no_face["error"] == "No face detected"
        assert no_face["match"] is False

    def test_one_to_n_source_without_face(self, frs):
        with pytest.raises(NoFaceDetectedError):
            asyncio.run(frs.one_to_n(face(None), [face("alice")]))

    def test_n_to_n_summary(self, frs):
        result = asyncio.run(frs.n_to_n([face("alice"), face("bob")], [face("alice"), face(None)]))

        assert result["summary"] == {
            "total_comparisons": 4,
            "matches": 1,
            "non_matches": 1,
            "errors": 2,
        }
        best = result["comparisons"][0]
        assert best["source"]["set_number"] == 1
        assert best["target"]["set_number"] == 2
        assert best["match"] is True


class TestErrors:
    """Tests for upstream failure mapping."""

    def test_http_error_status(self, frs, fake_frs):
        fake_frs.fail_detect = True
        with pytest.raises(FRSError) as exc:
            asyncio.run(frs.detect_faces(face("alice")))
        assert exc.value.status_code == 500
        assert exc.value.detail == {"detail": "detector down"}

    def test_detect_failure_is_per_item_in_one_to_n(self, frs, fake_frs):
        async def run():
            source = await frs.detect_faces(face("alice"))
            fake_frs.fail_detect = True
            item = await frs._detect_item(face("bob"), 0)
            return source, item

        _, item = asyncio.run(run())
        assert item["face"] is None
        assert item["error"] == "FRS returned 500"

    def test_connection_error(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        client = FRSClient(base_url="http://frs.test", transport=httpx.MockTransport(refuse))
        with pytest.raises(FRSError) as exc:
            asyncio.run(client.detect_faces(face("alice")))
        assert exc.value.status_code is None
        assert "refused" in exc.value.message


class TestVideo:
    """Tests for the video API wrappers."""

    def test_submit_video_sequence(self, frs, fake_frs):
        job_id = asyncio.run(frs.submit_video(ImageInput(b"\x00" * 16, "clip.mp4", "video/mp4")))

        assert job_id == "42"
        calls = [(r.method, r.url.path) for r in fake_frs.requests]
        assert calls == [
            ("POST", "/videos/"),
            ("PUT", "/videos/42/upload/source_file/"),
            ("POST", "/videos/42/process/"),
        ]

    def test_faces_and_clusters(self, frs):
        async def run():
            return await frs.get_video_faces(42), await frs.get_video_clusters(42)

        faces, clusters = asyncio.run(run())
        assert faces[0]["cluster"] == 7
        assert clusters[0]["faces_count"] == 1

    def test_missing_video(self, frs):
        with pytest.raises(FRSError) as exc:
            asyncio.run(frs.get_video(99))
        assert exc.value.status_code == 404
