import os
import tempfile

import pytest

# Point module-level Library() instances (api.py) at a throwaway database
# before config.py reads the environment.
os.environ.setdefault("LIBRARY_DB_FILE", os.path.join(tempfile.gettempdir(), f"library_test_{os.getpid()}.db"))
# Keep the real text-generation service out of the test run.
os.environ["OPENAI_API_KEY"] = ""

from library import Library
from book import BorrowerContact


@pytest.fixture
def lib(tmp_path, request):
    # Unique database file for each test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file)
    yield lib
    lib.close()


@pytest.fixture
def contact():
    return BorrowerContact(full_name="Ada Reader", email="ada@example.com", phone="555-0100")
