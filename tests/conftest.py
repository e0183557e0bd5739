"""
Shared fixtures: a temporary project with specification documents and an
initialized state directory, plus the core components wired over it.
"""

import pytest
import pytest_asyncio

from tests.helpers import FEAT_100, build_workflow, write_spec


@pytest.fixture
def project_dir(tmp_path):
    """Project root with an empty documents directory"""
    (tmp_path / "docs" / "specs").mkdir(parents=True)
    return tmp_path


@pytest.fixture
def docs_dir(project_dir):
    return project_dir / "docs" / "specs"


@pytest.fixture
def state_dir(project_dir):
    return project_dir / ".specflow" / "state"


@pytest.fixture
def feat_100(docs_dir):
    return write_spec(docs_dir, "feat-100.md", FEAT_100)


@pytest_asyncio.fixture
async def workflow(project_dir):
    """Components over a project with no documents yet"""
    return await build_workflow(project_dir)


@pytest_asyncio.fixture
async def feat_workflow(feat_100, project_dir):
    """Components over a project holding FEAT-100 with its record in sync"""
    return await build_workflow(project_dir)
