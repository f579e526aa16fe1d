"""Pytest configuration and fixtures for structgraph tests."""

import shutil
import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from structgraph.config_manager import ServerConfig
from structgraph.parser import SyntaxTreeParser

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_project_path() -> Path:
    """Get path to sample test project."""
    return FIXTURES / "sample_project"


@pytest.fixture
def fake_server_command() -> list:
    """Command line that launches the scripted language server."""
    return [sys.executable, str(FIXTURES / "fake_lsp_server.py")]


@pytest.fixture
def no_servers() -> dict:
    """Server configuration that disables every language server."""
    return {}


@pytest.fixture
def fake_server_configs(fake_server_command) -> dict:
    """Route every language to the scripted language server."""
    command, *args = fake_server_command
    return {
        language: ServerConfig(language=language, command=command, args=args)
        for language in ("javascript", "typescript", "tsx", "terraform")
    }


@pytest.fixture(scope="session")
def syntax_parser() -> SyntaxTreeParser:
    return SyntaxTreeParser()


@pytest.fixture
def parse_js(syntax_parser):
    """Parse a JavaScript snippet into a ParseResult."""

    def _parse(source: str, file_path: str = "src/sample.js", language: str = "javascript"):
        return syntax_parser.parse_source(source, file_path, language)

    return _parse


@pytest.fixture
def sample_terraform() -> str:
    return '''variable "region" {
  default = "us-east-1"
}

resource "aws_vpc" "main" {
  cidr_block = "10.0.0.0/16"
}

resource "aws_subnet" "main" {
  vpc_id = aws_vpc.main.id
  tags = {
    Region = var.region
  }
}

resource "aws_instance" "web" {
  subnet_id = aws_subnet.main.id
  depends_on = [aws_vpc.main]
}
'''
