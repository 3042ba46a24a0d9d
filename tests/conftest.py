# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited. Proprietary and confidential.
#

'''Conftest module.'''

# Libs.
import pytest

# Inco.
import antecipa

def pytest_configure(config):
    config.addinivalue_line('markers', 'smoke: mark test as smoke')
    config.addinivalue_line('markers', 'limitation: test reveals an intentional limitation of the API')
    config.addinivalue_line('markers', 'slow: mark test as slow')

@pytest.fixture(params=['memory', 'sqlite'])
def backend(request):
    '''Every storage backend, so behaviour is checked for parity.'''

    if request.param == 'memory':
        yield antecipa.InMemoryBackend()

    else:
        bck = antecipa.SqliteBackend(':memory:')

        yield bck

        bck.close()
