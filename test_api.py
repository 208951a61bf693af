#!/usr/bin/env python3
"""HTTP API behaviour: profiles, projects, proposals, messages, reviews, payments and dashboards"""
from datetime import datetime, timedelta

import pytest

from app import db, AuditLog, Message, Payment, Profile, Project, Transaction


# ---------------------------------------------------------------------------
# Profiles and session
# ---------------------------------------------------------------------------

def test_signup_starts_session(signup):
    client, profile_id = signup('freelancer', skills=['Python', 'Flask'], hourly_rate=45)

    response = client.get('/api/profile')
    assert response.status_code == 200
    profile = response.get_json()
    assert profile['id'] == profile_id
    assert profile['role'] == 'freelancer'
    assert profile['skills'] == ['Python', 'Flask']
    assert profile['hourly_rate'] == 45.0
    assert profile['stats']['average_rating'] == 0


@pytest.mark.parametrize('payload, message', [
    ({'role': 'admin', 'email': 'a@example.com', 'full_name': 'A'}, 'Role'),
    ({'role': 'client', 'email': 'not-an-email', 'full_name': 'A'}, 'Invalid email'),
    ({'role': 'client', 'email': 'a@example.com', 'full_name': '  '}, 'Full name'),
    ({'role': 'client', 'email': 'a@example.com', 'full_name': 'A', 'phone': '12ab'}, 'phone'),
    ({'role': 'client', 'email': 'a@example.com', 'full_name': 'A', 'website': 'example.com'}, 'Website'),
])
def test_signup_validation(make_client, payload, message):
    response = make_client().post('/api/profiles', json=payload)
    assert response.status_code == 400
    assert message in response.get_json()['error']


def test_signup_duplicate_email(signup, make_client):
    signup('client', email='taken@example.com')
    response = make_client().post('/api/profiles', json={
        'role': 'freelancer', 'email': 'Taken@example.com', 'full_name': 'Someone'
    })
    assert response.status_code == 400


def test_signed_out_requests_are_401(signup, make_client):
    client, _ = signup('client')
    assert client.delete('/api/session').status_code == 200
    assert client.get('/api/profile').status_code == 401
    assert make_client().get('/api/dashboard').status_code == 401
    assert make_client().post('/api/projects', json={}).status_code == 401


def test_profile_edit(signup):
    client, _ = signup('client')

    response = client.put('/api/profile', json={
        'full_name': 'Acme Ltd',
        'phone': '+44 20 7946 0958',
        'website': 'https://acme.example',
        'skills': ['ignored'],
        'hourly_rate': 99,
    })
    assert response.status_code == 200
    profile = response.get_json()['profile']
    assert profile['full_name'] == 'Acme Ltd'
    assert profile['website'] == 'https://acme.example'
    assert 'skills' not in profile
    assert db.session.get(Profile, profile['id']).hourly_rate is None


def test_profile_role_cannot_change(signup):
    client, _ = signup('freelancer')
    response = client.put('/api/profile', json={'role': 'client'})
    assert response.status_code == 400


def test_public_profile_hides_private_fields(signup, make_client):
    _, profile_id = signup('client', phone='+60123456789')
    data = make_client().get(f'/api/profiles/{profile_id}').get_json()
    assert 'email' not in data
    assert 'phone' not in data
    assert data['completed_projects'] == []
    assert make_client().get('/api/profiles/9999').status_code == 404


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

def post_project(client, **overrides):
    payload = {
        'title': 'Data pipeline',
        'description': 'Nightly ETL into a warehouse',
        'budget_min': 100,
        'budget_max': 800,
        'skills_required': ['Python', 'SQL'],
    }
    payload.update(overrides)
    return client.post('/api/projects', json=payload)


@pytest.mark.parametrize('overrides', [
    {'title': ''},
    {'skills_required': []},
    {'budget_min': 900, 'budget_max': 800},
    {'budget_min': -5},
    {'deadline': (datetime.utcnow() - timedelta(days=1)).isoformat()},
    {'deadline': 'next week'},
    {'status': 'completed'},
])
def test_create_project_validation(signup, overrides):
    client, _ = signup('client')
    assert post_project(client, **overrides).status_code == 400


def test_only_clients_post_projects(signup):
    client, _ = signup('freelancer')
    assert post_project(client).status_code == 403


def test_browse_filters(signup, make_client):
    client, _ = signup('client')
    post_project(client, title='Small logo', budget_max=500, skills_required=['Illustrator'])
    post_project(client, title='Mobile app', budget_min=1000, budget_max=3000, skills_required=['React Native'])
    post_project(client, title='Platform rebuild', budget_min=5000, budget_max=20000, skills_required=['Django'])
    post_project(client, title='Hidden draft', status='draft')

    visitor = make_client()

    def titles(**params):
        response = visitor.get('/api/projects', query_string=params)
        assert response.status_code == 200
        return [p['title'] for p in response.get_json()]

    assert titles() == ['Platform rebuild', 'Mobile app', 'Small logo']
    assert titles(budget='under-1000') == ['Small logo']
    assert titles(budget='1000-5000') == ['Mobile app']
    assert titles(budget='over-5000') == ['Platform rebuild']
    assert titles(skill='native') == ['Mobile app']
    assert titles(search='REBUILD') == ['Platform rebuild']
    assert titles(search='django') == ['Platform rebuild']
    assert visitor.get('/api/projects?budget=cheap').status_code == 400


def test_skill_filter_reaches_older_projects(signup, make_client):
    _, client_id = signup('client')
    started = datetime.utcnow() - timedelta(days=30)

    projects = [Project(client_id=client_id, title='Rust service', description='Old posting',
                        skills_required='["Rust"]', status='open', created_at=started)]
    for n in range(120):
        projects.append(Project(client_id=client_id, title=f'Site {n}', description='Markup work',
                                skills_required='["HTML"]', status='open',
                                created_at=started + timedelta(minutes=n + 1)))
    db.session.add_all(projects)
    db.session.commit()

    visitor = make_client()
    rust = visitor.get('/api/projects', query_string={'skill': 'rust'}).get_json()
    assert [p['title'] for p in rust] == ['Rust service']
    assert len(visitor.get('/api/projects', query_string={'skill': 'html'}).get_json()) == 120
    assert len(visitor.get('/api/projects', query_string={'search': 'rust'}).get_json()) == 1


def test_search_matches_skill_values_literally(signup, make_client):
    client, _ = signup('client')
    post_project(client, title='Logo', description='Brand mark', skills_required=['Illustrator', 'Figma'])
    post_project(client, title='Budget 100% fixed', description='Spreadsheet', skills_required=['Excel'])
    post_project(client, title='Café menu', description='Print design', skills_required=['Café branding'])

    visitor = make_client()

    def titles(**params):
        return [p['title'] for p in visitor.get('/api/projects', query_string=params).get_json()]

    assert titles(search='"') == []
    assert titles(search=',') == []
    assert titles(search='", "') == []
    assert titles(search='%') == ['Budget 100% fixed']
    assert titles(search='_') == []
    assert titles(search='figma') == ['Logo']
    assert titles(skill='%') == []
    assert titles(skill='café') == ['Café menu']


def test_drafts_are_private(signup, make_client):
    client, _ = signup('client')
    project_id = post_project(client, status='draft').get_json()['project']['id']

    assert make_client().get(f'/api/projects/{project_id}').status_code == 404
    assert client.get(f'/api/projects/{project_id}').status_code == 200


def test_project_status_transitions(signup):
    client, _ = signup('client')
    other, _ = signup('client')
    project_id = post_project(client, status='draft').get_json()['project']['id']

    def set_status(who, status):
        return who.put(f'/api/projects/{project_id}/status', json={'status': status})

    assert set_status(other, 'open').status_code == 403
    assert set_status(client, 'in_progress').status_code == 409
    assert set_status(client, 'open').status_code == 200
    assert set_status(client, 'draft').status_code == 200
    assert set_status(client, 'cancelled').status_code == 200
    assert set_status(client, 'open').status_code == 409
    assert set_status(client, 'bogus').status_code == 400


def test_project_detail_views(open_project, signup, make_client):
    project_id = open_project['project_id']

    owner_view = open_project['client'].get(f'/api/projects/{project_id}').get_json()
    assert owner_view['is_owner'] is True
    assert len(owner_view['proposals']) == 2

    bidder_view = open_project['freelancers'][0]['client'].get(f'/api/projects/{project_id}').get_json()
    assert bidder_view['my_proposal']['proposed_rate'] == 900.0
    assert bidder_view['can_apply'] is False
    assert 'proposals' not in bidder_view

    newcomer, _ = signup('freelancer')
    assert newcomer.get(f'/api/projects/{project_id}').get_json()['can_apply'] is True
    assert make_client().get(f'/api/projects/{project_id}').get_json()['can_apply'] is False


def test_my_projects(open_project):
    projects = open_project['client'].get('/api/projects/mine').get_json()
    assert len(projects) == 1
    assert projects[0]['proposal_count'] == 2


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

def test_proposal_rules(open_project, signup):
    project_id = open_project['project_id']
    bidder = open_project['freelancers'][0]['client']

    duplicate = bidder.post(f'/api/projects/{project_id}/proposals', json={
        'cover_letter': 'Again', 'proposed_rate': 100
    })
    assert duplicate.status_code == 400

    owner = open_project['client'].post(f'/api/projects/{project_id}/proposals', json={
        'cover_letter': 'Me', 'proposed_rate': 100
    })
    assert owner.status_code == 403

    newcomer, _ = signup('freelancer')
    for payload in ({'cover_letter': 'Hi', 'proposed_rate': 0},
                    {'cover_letter': 'Hi', 'proposed_rate': 'lots'},
                    {'cover_letter': '', 'proposed_rate': 100},
                    {'cover_letter': 'Hi', 'proposed_rate': 100, 'estimated_duration': -1}):
        assert newcomer.post(f'/api/projects/{project_id}/proposals', json=payload).status_code == 400

    assert newcomer.post('/api/projects/9999/proposals', json={
        'cover_letter': 'Hi', 'proposed_rate': 100
    }).status_code == 404


def test_no_proposals_on_closed_projects(active_contract, signup):
    newcomer, _ = signup('freelancer')
    response = newcomer.post(f"/api/projects/{active_contract['project_id']}/proposals", json={
        'cover_letter': 'Late', 'proposed_rate': 100
    })
    assert response.status_code == 409


def test_my_proposals(active_contract):
    proposals = active_contract['outsider']['client'].get('/api/proposals/mine').get_json()
    assert [p['status'] for p in proposals] == ['rejected']


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def test_messaging_between_parties(active_contract):
    contract_id = active_contract['contract_id']
    client = active_contract['client']
    freelancer = active_contract['freelancer']['client']
    url = f'/api/contracts/{contract_id}/messages'

    first = client.post(url, json={'content': '  Welcome aboard  '})
    assert first.status_code == 201
    assert first.get_json()['content'] == 'Welcome aboard'
    first_id = first.get_json()['id']

    assert freelancer.post(url, json={'content': 'Thanks!'}).status_code == 201
    assert client.post(url, json={'content': 'Kickoff at 10'}).status_code == 201

    messages = freelancer.get(url).get_json()
    assert [m['content'] for m in messages] == ['Welcome aboard', 'Thanks!', 'Kickoff at 10']

    newer = client.get(url, query_string={'after_id': first_id}).get_json()
    assert [m['content'] for m in newer] == ['Thanks!', 'Kickoff at 10']


def test_message_rules(active_contract):
    url = f"/api/contracts/{active_contract['contract_id']}/messages"
    client = active_contract['client']

    assert client.post(url, json={'content': '   '}).status_code == 400
    assert client.post(url, json={'content': 'x' * 5001}).status_code == 400
    assert client.post(url, json={}).status_code == 400

    outsider = active_contract['outsider']['client']
    assert outsider.post(url, json={'content': 'Let me in'}).status_code == 403
    assert outsider.get(url).status_code == 403
    assert client.get('/api/contracts/9999/messages').status_code == 404


def test_messages_are_immutable(active_contract):
    url = f"/api/contracts/{active_contract['contract_id']}/messages"
    message_id = active_contract['client'].post(url, json={'content': 'Original'}).get_json()['id']

    message = db.session.get(Message, message_id)
    message.content = 'Edited'
    with pytest.raises(ValueError):
        db.session.commit()
    db.session.rollback()


def test_conversations(active_contract):
    url = f"/api/contracts/{active_contract['contract_id']}/messages"
    active_contract['client'].post(url, json={'content': 'First'})
    active_contract['freelancer']['client'].post(url, json={'content': 'Latest'})

    conversations = active_contract['client'].get('/api/conversations').get_json()
    assert len(conversations) == 1
    assert conversations[0]['other_party']['id'] == active_contract['freelancer']['id']
    assert conversations[0]['last_message']['content'] == 'Latest'

    assert active_contract['outsider']['client'].get('/api/conversations').get_json() == []


# ---------------------------------------------------------------------------
# Contracts and reviews
# ---------------------------------------------------------------------------

def test_contract_access(active_contract):
    contract_id = active_contract['contract_id']

    assert len(active_contract['client'].get('/api/contracts').get_json()) == 1
    assert len(active_contract['freelancer']['client'].get('/api/contracts').get_json()) == 1
    assert active_contract['outsider']['client'].get('/api/contracts').get_json() == []

    detail = active_contract['freelancer']['client'].get(f'/api/contracts/{contract_id}').get_json()
    assert detail['payment']['status'] == 'escrowed'
    assert detail['can_review'] is False
    assert active_contract['outsider']['client'].get(f'/api/contracts/{contract_id}').status_code == 403


def test_reviews_after_completion(active_contract, make_client):
    contract_id = active_contract['contract_id']
    client = active_contract['client']
    freelancer = active_contract['freelancer']['client']
    url = f'/api/contracts/{contract_id}/reviews'

    early = client.post(url, json={'rating': 5})
    assert early.status_code == 400

    assert client.post(f'/api/contracts/{contract_id}/complete').status_code == 200

    for rating in (0, 6, 4.5, '5', True):
        assert client.post(url, json={'rating': rating}).status_code == 400

    response = client.post(url, json={'rating': 5, 'comment': 'Great work'})
    assert response.status_code == 201
    assert response.get_json()['review']['reviewee_id'] == active_contract['freelancer']['id']

    assert client.post(url, json={'rating': 4}).status_code == 400
    assert freelancer.post(url, json={'rating': 4}).status_code == 201
    assert active_contract['outsider']['client'].post(url, json={'rating': 1}).status_code == 403

    profile = make_client().get(f"/api/profiles/{active_contract['freelancer']['id']}").get_json()
    assert profile['stats']['average_rating'] == 5.0
    assert profile['stats']['total_reviews'] == 1
    assert profile['reviews'][0]['comment'] == 'Great work'

    client_profile = make_client().get(f"/api/profiles/{active_contract['client_id']}").get_json()
    assert client_profile['stats']['average_rating'] == 4.0
    assert [p['id'] for p in client_profile['completed_projects']] == [active_contract['project_id']]

    paged = make_client().get(f"/api/profiles/{active_contract['client_id']}/reviews").get_json()
    assert paged['pagination']['total'] == 1


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@pytest.mark.parametrize('action', ['release', 'refund'])
def test_only_client_moves_escrow(active_contract, action):
    payment_id = active_contract['payment_id']

    for who in (active_contract['freelancer']['client'], active_contract['outsider']['client']):
        assert who.post(f'/api/payments/{payment_id}/{action}', json={}).status_code == 403

    assert db.session.get(Payment, payment_id).status == 'escrowed'
    assert Transaction.query.filter_by(payment_id=payment_id).count() == 1
    assert AuditLog.query.filter_by(event_type='permission_denied', resource_type='payment').count() == 2


def test_release_flow(active_contract):
    payment_id = active_contract['payment_id']
    client = active_contract['client']

    response = client.post(f'/api/payments/{payment_id}/release')
    assert response.status_code == 200
    payment = response.get_json()['payment']
    assert payment['status'] == 'released'
    assert [t['type'] for t in payment['transactions']] == ['release', 'escrow']
    assert all(t['amount'] == 900.0 for t in payment['transactions'])

    double = client.post(f'/api/payments/{payment_id}/release')
    assert double.status_code == 409
    assert double.get_json()['status'] == 'released'
    assert client.post(f'/api/payments/{payment_id}/refund', json={}).status_code == 409
    assert client.post(f'/api/payments/{payment_id}/escrow', json={}).status_code == 409

    assert Transaction.query.filter_by(payment_id=payment_id).count() == 2
    assert AuditLog.query.filter_by(event_type='payment_released').count() == 1


def test_refund_flow(active_contract):
    payment_id = active_contract['payment_id']

    response = active_contract['client'].post(f'/api/payments/{payment_id}/refund',
                                              json={'reason': 'Scope changed'})
    assert response.status_code == 200
    latest = response.get_json()['payment']['transactions'][0]
    assert latest['type'] == 'refund'
    assert latest['description'] == 'Scope changed'

    assert active_contract['client'].post(f'/api/payments/{payment_id}/release').status_code == 409


def test_payment_listing(active_contract):
    freelancer = active_contract['freelancer']['client']

    payments = freelancer.get('/api/payments').get_json()
    assert len(payments) == 1
    assert payments[0]['role'] == 'freelancer'
    assert payments[0]['project_title'] == 'Build a landing page'

    assert freelancer.get('/api/payments?status=escrowed').get_json()[0]['id'] == active_contract['payment_id']
    assert freelancer.get('/api/payments?status=released').get_json() == []
    assert freelancer.get('/api/payments?status=lost').status_code == 400

    assert active_contract['outsider']['client'].get('/api/payments').get_json() == []
    assert active_contract['outsider']['client'].get(
        f"/api/payments/{active_contract['payment_id']}"
    ).status_code == 403
    assert freelancer.get('/api/payments/9999').status_code == 404


# ---------------------------------------------------------------------------
# Dashboards and admin
# ---------------------------------------------------------------------------

def test_client_dashboard(active_contract):
    data = active_contract['client'].get('/api/dashboard').get_json()
    assert data['stats'] == {'total_projects': 1, 'active_projects': 1, 'active_contracts': 1}
    assert len(data['recent_contracts']) == 1


def test_freelancer_dashboard(active_contract):
    data = active_contract['outsider']['client'].get('/api/dashboard').get_json()
    assert data['stats']['active_proposals'] == 0
    assert data['stats']['active_contracts'] == 0
    assert data['stats']['total_proposals'] == 1
    assert data['open_projects'] == []

    winner = active_contract['freelancer']['client'].get('/api/dashboard').get_json()
    assert winner['stats']['active_contracts'] == 1
    assert len(winner['recent_contracts']) == 1


@pytest.fixture
def admin_client(app, make_client):
    result = app.test_cli_runner().invoke(args=['create-admin', 'ops@example.com', 'Site Admin'])
    assert result.exit_code == 0, result.output
    admin_id = Profile.query.filter_by(email='ops@example.com').one().id

    client = make_client()
    with client.session_transaction() as sess:
        sess['user_id'] = admin_id
    return client


def test_create_admin_is_idempotent(app, admin_client):
    result = app.test_cli_runner().invoke(args=['create-admin', 'ops@example.com', 'Site Admin'])
    assert result.exit_code == 0
    assert Profile.query.filter_by(role='admin').count() == 1


def test_audit_logs_are_admin_only(active_contract, admin_client):
    assert active_contract['client'].get('/api/admin/audit-logs').status_code == 403

    active_contract['client'].post(f"/api/payments/{active_contract['payment_id']}/release")

    response = admin_client.get('/api/admin/audit-logs', query_string={'category': 'financial'})
    assert response.status_code == 200
    event_types = [log['event_type'] for log in response.get_json()['logs']]
    assert event_types == ['payment_released', 'payment_escrowed', 'contract_created']
    assert response.get_json()['logs'][0]['details'] == {'amount': 900.0}

    stats = admin_client.get('/api/dashboard').get_json()['stats']
    assert stats['contracts'] == 1
    assert stats['transactions'] == 2


def test_security_headers(make_client):
    response = make_client().get('/api/projects')
    assert response.headers['X-Content-Type-Options'] == 'nosniff'
    assert response.headers['X-Frame-Options'] == 'DENY'
