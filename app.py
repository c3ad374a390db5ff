import os
from dotenv import load_dotenv
load_dotenv()

import uuid

from datetime import datetime
from functools import wraps
from werkzeug.security import generate_password_hash, check_password_hash
from slugify import slugify

from flask import Flask, request, jsonify
from flask_login import LoginManager, UserMixin, login_user, logout_user, current_user

# SQLAlchemy Imports
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship, backref
from sqlalchemy.exc import SQLAlchemyError

from flask_migrate import Migrate

# CSRF protection
from flask_wtf.csrf import CSRFProtect

from category_tree import CategoryNode, TreeIndex, ReferenceMismatch, ValidationRejection


app = Flask(__name__)

# --- Configuration ---
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'a_very_secret_key_that_should_be_in_env')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# The server trusts the console to keep the tree acyclic unless this is on
app.config['CATEGORY_REORDER_CHECK_CYCLES'] = os.environ.get('CATEGORY_REORDER_CHECK_CYCLES', 'true').lower() not in ('0', 'false', 'no')

database_url = os.environ.get('DATABASE_URL')
if not database_url:
    raise ValueError("DATABASE_URL environment variable is not set. Cannot connect to the database.")
# Hosted PostgreSQL URLs may use 'postgres://', but SQLAlchemy wants 'postgresql://'
if database_url.startswith('postgres://'):
    database_url = database_url.replace('postgres://', 'postgresql://', 1)
app.config['SQLALCHEMY_DATABASE_URI'] = database_url

app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
    "pool_pre_ping": True,
    "pool_recycle": 299,
}

db = SQLAlchemy(app)
migrate = Migrate(app, db)

login_manager = LoginManager(app)
csrf = CSRFProtect(app)


# --- Database Models ---
class User(db.Model, UserMixin):
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(120), unique=True, nullable=False)
    password_hash = Column(Text, nullable=False)
    full_name = Column(String(100), nullable=True)
    role = Column(String(20), default='editor', nullable=False) # 'editor', 'admin'
    registration_date = Column(DateTime, default=datetime.utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def is_admin(self):
        """Checks if the user has the 'admin' role."""
        return self.role == 'admin'

    def __repr__(self):
        return f"User('{self.email}', '{self.role}')"


class Category(db.Model):
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), unique=True, nullable=False)
    slug = Column(String(120), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    published = Column(Boolean, default=False, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    parent_id = Column(String(36), ForeignKey('category.id'), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    children = relationship('Category', backref=backref('parent', remote_side=[id]), lazy=True)

    def to_dict(self):
        return {
            'documentId': self.id,
            'name': self.name,
            'slug': self.slug,
            'description': self.description or '',
            'published': bool(self.published),
            'sortOrder': self.sort_order or 0,
            'parentDocumentId': self.parent_id,
        }

    def to_node(self):
        return CategoryNode.from_api(self.to_dict())

    def __repr__(self):
        return f"Category('{self.name}', order={self.sort_order})"


# --- Flask-Login User Loader ---
@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, user_id)


# --- Helper Functions ---
def unique_slug(name, exclude_id=None):
    """Slug for a category name, suffixed with -2, -3, ... when already taken."""
    base = slugify(name) or 'category'
    candidate = base
    counter = 2
    while True:
        existing = Category.query.filter_by(slug=candidate).first()
        if not existing or existing.id == exclude_id:
            return candidate
        candidate = f"{base}-{counter}"
        counter += 1


def renormalize_siblings(parent_id):
    """Rewrite one sibling group's sort_order to 0..k-1, keeping (sort_order, name) order."""
    siblings = Category.query.filter_by(parent_id=parent_id).order_by(Category.sort_order, Category.name).all()
    for index, sibling in enumerate(siblings):
        sibling.sort_order = index


def parse_reorder_items(items, known):
    """Validate a bulk reorder batch against the stored categories.

    `known` maps documentId -> Category for every id the batch mentions that
    exists. Returns a list of (category, parent_id, sort_order). Raises
    ReferenceMismatch naming the first unknown (or non-string) id, or
    ValidationRejection for a self-parented or repeated entry and for a negative
    or boolean sortOrder. Nothing is written here.
    """
    updates = []
    seen = set()
    for item in items:
        document_id = item.get('documentId') if isinstance(item, dict) else None
        current = known.get(document_id) if isinstance(document_id, str) else None
        if current is None:
            raise ReferenceMismatch(f"Invalid category documentId: {document_id}", document_id)

        parent_document_id = item.get('parentDocumentId')
        if not isinstance(parent_document_id, str) or not parent_document_id.strip():
            parent_document_id = None

        if parent_document_id and parent_document_id == document_id:
            raise ValidationRejection('Category cannot be parent of itself')

        if parent_document_id and parent_document_id not in known:
            raise ReferenceMismatch(f"Invalid parentDocumentId: {parent_document_id}", parent_document_id)

        if document_id in seen:
            raise ValidationRejection(f"Duplicate category documentId: {document_id}")
        seen.add(document_id)

        sort_order = item.get('sortOrder')
        if isinstance(sort_order, bool):
            raise ValidationRejection(f"Invalid sortOrder for {document_id}")
        try:
            sort_order = int(sort_order)
        except (TypeError, ValueError, OverflowError):
            sort_order = 0
        if sort_order < 0:
            raise ValidationRejection(f"Invalid sortOrder for {document_id}")

        updates.append((current, parent_document_id, sort_order))
    return updates


def resulting_hierarchy_has_cycle(updates):
    """Check the forest the batch would produce, including untouched categories."""
    assigned = {category.id: parent_id for category, parent_id, _ in updates}
    nodes = [
        CategoryNode(document_id=c.id, name=c.name, parent_id=assigned.get(c.id, c.parent_id))
        for c in Category.query.all()
    ]
    return TreeIndex(nodes).has_cycle()


def reorder_category_tree(items):
    """Validate and apply a full (documentId, parentDocumentId, sortOrder) snapshot.

    The whole batch is rejected on the first invalid entry. Returns the number
    of categories written.
    """
    if not items:
        raise ValidationRejection('items is required')

    referenced = set()
    for item in items:
        if isinstance(item, dict):
            for key in ('documentId', 'parentDocumentId'):
                ref = item.get(key)
                if isinstance(ref, str) and ref:
                    referenced.add(ref)
    known = {c.id: c for c in Category.query.filter(Category.id.in_(referenced)).all()}

    updates = parse_reorder_items(items, known)

    if app.config['CATEGORY_REORDER_CHECK_CYCLES'] and resulting_hierarchy_has_cycle(updates):
        raise ValidationRejection('Category hierarchy contains a cycle')

    for category, parent_id, sort_order in updates:
        category.parent_id = parent_id
        category.sort_order = sort_order
    db.session.commit()
    return len(updates)


# --- Decorators ---
def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            return jsonify(success=False, message='Login required.'), 401
        if not current_user.is_admin():
            return jsonify(success=False, message='Admin access required.'), 403
        return f(*args, **kwargs)
    return decorated_function


# --- Routes ---
@app.route('/admin-login', methods=['POST'])
@csrf.exempt # JSON endpoint used by the admin console
def admin_login():
    data = request.get_json(silent=True) or {}
    email = data.get('email')
    password = data.get('password')

    user = User.query.filter_by(email=email).first()
    if user and user.is_admin() and user.check_password(password):
        login_user(user)
        return jsonify(success=True, message='Logged in.')
    return jsonify(success=False, message='Invalid admin credentials.'), 401


@app.route('/logout', methods=['POST'])
@csrf.exempt
def logout():
    logout_user()
    return jsonify(success=True, message='Logged out.')


@app.route('/api/categories')
def public_categories():
    categories = Category.query.filter_by(parent_id=None, published=True).order_by(Category.sort_order, Category.name).all()
    return jsonify(success=True, data=[c.to_dict() for c in categories])


@app.route('/admin/api/categories')
@admin_required
def admin_categories():
    query = Category.query

    name = (request.args.get('name') or '').strip()
    if name:
        query = query.filter(Category.name.ilike(f"%{name}%"))

    published = request.args.get('published')
    if published == 'published':
        query = query.filter(Category.published.is_(True))
    elif published == 'unpublished':
        query = query.filter(Category.published.is_(False))

    level = request.args.get('level')
    if level == 'root':
        query = query.filter(Category.parent_id.is_(None))
    elif level == 'child':
        query = query.filter(Category.parent_id.isnot(None))

    categories = query.order_by(Category.sort_order, Category.name).all()
    return jsonify(success=True, data=[c.to_dict() for c in categories], meta={'total': len(categories)})


@app.route('/admin/api/categories/<category_id>')
@admin_required
def admin_category_detail(category_id):
    category = db.session.get(Category, category_id)
    if not category:
        return jsonify(success=False, message='Category not found'), 404
    return jsonify(success=True, data=category.to_dict())


@app.route('/admin/api/categories', methods=['POST'])
@csrf.exempt
@admin_required
def admin_add_category():
    data = (request.get_json(silent=True) or {}).get('data') or {}
    name = (data.get('name') or '').strip()
    if not name:
        return jsonify(success=False, message='Category name cannot be empty.'), 400

    if Category.query.filter_by(name=name).first():
        return jsonify(success=False, message=f'Category "{name}" already exists.'), 400

    parent_id = data.get('parentDocumentId') or None
    if parent_id and not db.session.get(Category, parent_id):
        return jsonify(success=False, message=f'Invalid parentDocumentId: {parent_id}'), 400

    # New categories go last in their sibling group
    sibling_count = Category.query.filter_by(parent_id=parent_id).count()
    new_category = Category(
        name=name,
        slug=unique_slug(data.get('slug') or name),
        description=data.get('description'),
        published=bool(data.get('published', False)),
        parent_id=parent_id,
        sort_order=sibling_count,
    )
    db.session.add(new_category)
    db.session.commit()
    app.logger.info(f"Category '{name}' created under {parent_id or 'root'} at position {sibling_count}")
    return jsonify(success=True, message=f'Category "{name}" added successfully!', data=new_category.to_dict()), 201


@app.route('/admin/api/categories/<category_id>', methods=['PUT'])
@csrf.exempt
@admin_required
def admin_edit_category(category_id):
    category = db.session.get(Category, category_id)
    if not category:
        return jsonify(success=False, message='Category not found'), 404

    data = (request.get_json(silent=True) or {}).get('data') or {}
    new_name = (data.get('name') or '').strip()
    if new_name and new_name != category.name:
        existing_category = Category.query.filter_by(name=new_name).first()
        if existing_category and existing_category.id != category.id:
            return jsonify(success=False, message=f'Category name "{new_name}" already exists.'), 400
        category.name = new_name

    if data.get('slug'):
        category.slug = unique_slug(data['slug'], exclude_id=category.id)
    if 'description' in data:
        category.description = data.get('description')
    if 'published' in data:
        category.published = bool(data.get('published'))

    db.session.commit()
    return jsonify(success=True, message='Category updated successfully!', data=category.to_dict())


@app.route('/admin/api/categories/<category_id>/toggle-publish', methods=['POST'])
@csrf.exempt
@admin_required
def admin_toggle_category_publish(category_id):
    category = db.session.get(Category, category_id)
    if not category:
        return jsonify(success=False, message='Category not found'), 404
    category.published = not category.published
    db.session.commit()
    return jsonify(success=True, data=category.to_dict())


@app.route('/admin/api/categories/<category_id>', methods=['DELETE'])
@csrf.exempt
@admin_required
def admin_delete_category(category_id):
    category = db.session.get(Category, category_id)
    if not category:
        return jsonify(success=False, message='Category not found'), 404

    if category.children:
        return jsonify(success=False, message=f'Cannot delete category "{category.name}" because it has child categories. Move or delete them first.'), 400

    parent_id = category.parent_id
    db.session.delete(category)
    db.session.flush()
    renormalize_siblings(parent_id)
    db.session.commit()
    return jsonify(success=True, message=f'Category "{category.name}" deleted successfully.')


@app.route('/admin/api/categories/reorder-tree', methods=['POST'])
@csrf.exempt
@admin_required
def admin_reorder_categories():
    data = (request.get_json(silent=True) or {}).get('data') or {}
    items = data.get('items')
    if not isinstance(items, list):
        items = []

    try:
        updated = reorder_category_tree(items)
    except (ReferenceMismatch, ValidationRejection) as e:
        db.session.rollback()
        return jsonify(success=False, message=str(e)), 400
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f"Error applying category reorder batch: {e}")
        return jsonify(success=False, message='Failed to save category order.'), 500

    app.logger.info(f"Category tree reordered: {updated} categories updated")
    return jsonify(success=True, updated=updated)


@app.route("/version")
def version():
    return "Category Admin | Build: 2026-10-17"

# --- Run the App ---
if __name__ == '__main__':
    app.run(debug=True)
