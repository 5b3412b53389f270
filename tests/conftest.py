import logging
import zipfile

import pytest

from convai_relay.config.settings import Settings

DOCX_XML = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">'
    "<w:body>"
    "<w:p><w:r><w:t>Threat </w:t></w:r><w:r><w:t>model</w:t></w:r></w:p>"
    "<w:p><w:r><w:t>Phishing &amp; vishing</w:t></w:r></w:p>"
    "<w:p></w:p>"
    "</w:body></w:document>"
)


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test"""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    logging.basicConfig(level=logging.NOTSET)
    yield


@pytest.fixture
def settings(tmp_path):
    """Fully configured settings rooted in a temporary directory."""
    return Settings(
        api_key="sk_test_0123456789abcdef",
        voice_id="voice_123",
        agent_id="agent_123",
        webhook_url="https://hooks.example.com/kb",
        projects_dir=tmp_path / "projects",
        output_dir=tmp_path / "out",
    )


def write_docx(path, xml=DOCX_XML):
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("word/document.xml", xml)


@pytest.fixture
def projects_dir(settings):
    """Two projects: 'cyber' with one document of each inline type, and 'empty'."""
    root = settings.projects_dir
    cyber = root / "cyber"
    cyber.mkdir(parents=True)
    (cyber / "01_intro.txt").write_text("Intro text", encoding="utf-8")
    (cyber / "02_notes.md").write_text("# Notes", encoding="utf-8")
    write_docx(cyber / "03_brief.docx")
    (cyber / "ignored.pdf").write_bytes(b"%PDF-1.4")
    (root / "empty").mkdir()
    (root / "README.txt").write_text("not a project", encoding="utf-8")
    return root


@pytest.fixture
def docx_writer():
    """Write a minimal .docx archive; the default body holds two paragraphs."""
    return write_docx
