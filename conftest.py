"""Shared pytest fixtures. The environment is set before app is imported."""
import os
import tempfile

os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['SESSION_SECRET'] = 'test-secret'
os.environ['RATELIMIT_ENABLED'] = 'false'
os.environ['AUDIT_LOG_DIR'] = tempfile.mkdtemp(prefix='audit-logs-')
os.environ.pop('AUDIT_WEBHOOK_URL', None)

import pytest

from app import app as flask_app, db


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()


@pytest.fixture
def make_client(app):
    """Each test client keeps its own session cookie, so one client per user"""
    return app.test_client


@pytest.fixture
def signup(make_client):
    """Create a profile through the API and return (client, profile_id)"""
    counter = {'n': 0}

    def _signup(role, full_name=None, **extra):
        counter['n'] += 1
        client = make_client()
        payload = {
            'role': role,
            'email': extra.pop('email', f'{role}{counter["n"]}@example.com'),
            'full_name': full_name or f'{role.title()} {counter["n"]}',
        }
        payload.update(extra)
        response = client.post('/api/profiles', json=payload)
        assert response.status_code == 201, response.get_json()
        return client, response.get_json()['profile']['id']

    return _signup


@pytest.fixture
def open_project(signup):
    """A client with an open project and two freelancers who have each bid on it"""
    client, client_id = signup('client')
    response = client.post('/api/projects', json={
        'title': 'Build a landing page',
        'description': 'Single page marketing site',
        'budget_min': 500,
        'budget_max': 1500,
        'skills_required': ['HTML', 'CSS'],
    })
    assert response.status_code == 201
    project_id = response.get_json()['project']['id']

    freelancers = []
    for rate in (900, 1100):
        fl_client, fl_id = signup('freelancer', skills=['HTML'])
        response = fl_client.post(f'/api/projects/{project_id}/proposals', json={
            'cover_letter': 'I can build this quickly.',
            'proposed_rate': rate,
            'estimated_duration': 20,
        })
        assert response.status_code == 201
        freelancers.append({
            'client': fl_client,
            'id': fl_id,
            'proposal_id': response.get_json()['proposal']['id'],
        })

    return {
        'client': client,
        'client_id': client_id,
        'project_id': project_id,
        'freelancers': freelancers,
    }


@pytest.fixture
def active_contract(open_project):
    """open_project after the client accepted the first freelancer's proposal"""
    winner = open_project['freelancers'][0]
    response = open_project['client'].post(f"/api/proposals/{winner['proposal_id']}/accept", json={})
    assert response.status_code == 201, response.get_json()
    contract = response.get_json()['contract']

    data = dict(open_project)
    data['freelancer'] = winner
    data['outsider'] = open_project['freelancers'][1]
    data['contract_id'] = contract['id']
    data['payment_id'] = contract['payment']['id']
    return data
