"""
Shared fixtures: a throwaway SQLite database, Flask test clients and a seeded
category tree.
"""
import os
import tempfile

# The app reads its configuration at import time
_db_dir = tempfile.mkdtemp(prefix='category-admin-tests-')
os.environ['DATABASE_URL'] = 'sqlite:///' + os.path.join(_db_dir, 'test.db')
os.environ.setdefault('SECRET_KEY', 'test-secret')

import pytest

from app import app as flask_app, db, User, Category


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True, CATEGORY_REORDER_CHECK_CYCLES=True)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(email, password, role):
    user = User(email=email, role=role)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_client(app):
    make_user('admin@example.com', 'secret', 'admin')
    client = app.test_client()
    response = client.post('/admin-login', json={'email': 'admin@example.com', 'password': 'secret'})
    assert response.status_code == 200
    return client


def make_category(name, sort_order, parent=None, published=True):
    category = Category(
        name=name,
        slug=name.lower(),
        sort_order=sort_order,
        parent_id=parent.id if parent else None,
        published=published,
    )
    db.session.add(category)
    db.session.flush()
    return category


@pytest.fixture
def tree(app):
    """Root1(0), Root2(1) with Child1(0) under Root2, plus an unpublished Root3(2)."""
    root1 = make_category('Root1', 0)
    root2 = make_category('Root2', 1)
    child1 = make_category('Child1', 0, parent=root2)
    root3 = make_category('Root3', 2, published=False)
    db.session.commit()
    return {'Root1': root1.id, 'Root2': root2.id, 'Child1': child1.id, 'Root3': root3.id}


def stored_layout():
    """{name: (parent name or None, sort_order)} as currently in the database."""
    db.session.expire_all()
    categories = Category.query.all()
    names = {c.id: c.name for c in categories}
    return {c.name: (names.get(c.parent_id), c.sort_order) for c in categories}
