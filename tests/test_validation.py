"""Tests for overlay request validation."""

import pytest

from caption_overlay.captions.styles import LayoutMode
from caption_overlay.errors import ValidationError
from caption_overlay.validation import validate_overlay_request

SOURCE = "https://drive.google.com/file/d/1AbCdEfGh/view"


class TestValidateOverlayRequest:
    """Tests for validate_overlay_request."""

    def test_minimal(self):
        """Test a URL and text are enough."""
        request = validate_overlay_request({"videoUrl": SOURCE, "text": "Hello"})

        assert request.video_url == SOURCE
        assert request.text == "Hello"
        assert request.style.font_size == 30

    def test_style_fields(self):
        """Test style options are parsed from the payload."""
        request = validate_overlay_request(
            {
                "videoUrl": SOURCE,
                "text": "Hello",
                "fontSize": 48,
                "fontColor": "white",
                "backgroundColor": "rgb(0, 0, 0)",
                "mode": "overlay",
            }
        )

        assert request.style.font_size == 48
        assert request.style.background_color == "rgb(0, 0, 0)"
        assert request.style.mode == LayoutMode.OVERLAY

    def test_snake_case_url(self):
        """Test video_url is accepted as well."""
        request = validate_overlay_request({"video_url": f"  {SOURCE} ", "text": "Hello"})

        assert request.video_url == SOURCE

    def test_missing_fields(self):
        """Test every missing field is reported."""
        with pytest.raises(ValidationError) as exc_info:
            validate_overlay_request({})

        assert exc_info.value.message == "Validation failed"
        assert exc_info.value.errors == ["videoUrl is required", "text is required"]

    def test_invalid_url(self):
        """Test non-Drive URLs are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            validate_overlay_request({"videoUrl": "https://example.com/video.mp4", "text": "Hello"})

        assert exc_info.value.errors == ["videoUrl must be a valid Google Drive URL"]

    def test_non_string_fields(self):
        """Test fields of the wrong type are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            validate_overlay_request({"videoUrl": 42, "text": ["Hello"]})

        assert exc_info.value.errors == ["videoUrl must be a string", "text must be a string"]

    def test_text_too_long(self):
        """Test the caption length limit."""
        with pytest.raises(ValidationError) as exc_info:
            validate_overlay_request({"videoUrl": SOURCE, "text": "x" * 101})

        assert exc_info.value.errors == ["text must be 100 characters or less"]

    def test_custom_text_limit(self):
        """Test the limit comes from the caller."""
        validate_overlay_request({"videoUrl": SOURCE, "text": "x" * 150}, max_text_length=200)

    def test_style_errors_collected(self):
        """Test style problems are reported alongside request problems."""
        with pytest.raises(ValidationError) as exc_info:
            validate_overlay_request({"text": "Hello", "fontSize": 100, "fontColor": "not a colour"})

        errors = exc_info.value.errors
        assert errors[0] == "videoUrl is required"
        assert any("fontSize" in error for error in errors)
        assert any("fontColor" in error for error in errors)

    def test_font_size_string_rejected(self):
        """Test a numeric string font size is reported as a field error."""
        with pytest.raises(ValidationError) as exc_info:
            validate_overlay_request({"videoUrl": SOURCE, "text": "Hello", "fontSize": "30"})

        assert any(error.startswith("fontSize:") for error in exc_info.value.errors)

    def test_unknown_style_field(self):
        """Test unknown keys are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            validate_overlay_request({"videoUrl": SOURCE, "text": "Hello", "fontWeight": "bold"})

        assert any("fontWeight" in error for error in exc_info.value.errors)
