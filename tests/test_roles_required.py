from uuid import uuid4

import pytest

from conftest import create_user, login_client
from src.memoire.models import AppRole
from src.utils.decorator import roles_required


@pytest.fixture
def protected_url(app):
    path = f"/role-protected-{uuid4().hex}"
    endpoint = f"role_protected_{uuid4().hex}"

    @app.route(path, endpoint=endpoint)
    @roles_required('admin')
    def role_protected():
        return 'restricted', 200

    return path


def test_forbidden_json_for_other_roles(client, protected_url):
    user = create_user('basic', AppRole.SUPERVISOR)
    login_client(client, user.id)

    response = client.get(protected_url, follow_redirects=False)
    assert response.status_code == 403
    assert response.get_json()['error'] == 'unauthorized'


def test_anonymous_gets_401(client, protected_url):
    response = client.get(protected_url)
    assert response.status_code == 401


def test_access_for_admin(client, protected_url):
    admin = create_user('super', AppRole.ADMIN)
    login_client(client, admin.id)

    response = client.get(protected_url)
    assert response.status_code == 200
    assert b'restricted' in response.data
