"""
tests/conftest.py
"""


import pytest

from blog import POST, make_provider


@pytest.fixture
def provider():

    return make_provider()

@pytest.fixture
def post_meta():

    return POST
