# app/cli.py
import click
from werkzeug.security import generate_password_hash

from .extensions import db
from .model import Product, ProductImage, User
from .services import inventory_service
from .utils.money import D

SAMPLE_PRODUCTS = [
    ("Wireless Mouse", "12.50", 120),
    ("Mechanical Keyboard", "79.90", 40),
    ("USB-C Hub 7-in-1", "34.00", 75),
    ("27in Monitor", "219.00", 15),
    ("Laptop Stand", "29.99", 60),
    ("Noise Cancelling Headphones", "149.00", 25),
    ("Webcam 1080p", "45.50", 50),
    ("Desk Lamp", "19.90", 80),
    ("External SSD 1TB", "99.00", 30),
    ("Ergonomic Chair", "289.00", 8),
]

def _slugify(name: str) -> str:
    return "-".join("".join(ch if ch.isalnum() else " " for ch in name.lower()).split())

@click.command("create-admin")
@click.option("--email", required=True)
@click.option("--password", required=True)
@click.option("--name", required=True)
def create_admin(email, password, name):
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        click.echo("Email already exists"); return
    u = User(email=email, name=name, password_hash=generate_password_hash(password), role="admin")
    db.session.add(u); db.session.commit()
    click.echo(f"Admin created: {u.id} {u.email}")

@click.command("seed-products")
@click.option("--count", default=len(SAMPLE_PRODUCTS), show_default=True, type=int)
def seed_products(count):
    created = 0
    for name, price, stock in SAMPLE_PRODUCTS[:count]:
        slug = _slugify(name)
        if Product.query.filter_by(slug=slug).first():
            continue
        p = Product(name=name, slug=slug, price=D(price), stock=stock, is_active=True)
        p.images.append(ProductImage(image_url=f"/static/products/{slug}.jpg", main=True))
        db.session.add(p)
        created += 1
    db.session.commit()
    click.echo(f"Seeded {created} product(s)")

@click.command("reconcile-counters")
def reconcile_counters():
    """Recompute product sales and coupon usage from order rows."""
    fixed = inventory_service.reconcile_counters()
    click.echo(f"Corrected {fixed['products']} product(s), {fixed['coupons']} coupon(s)")

def register_cli(app):
    app.cli.add_command(create_admin)
    app.cli.add_command(seed_products)
    app.cli.add_command(reconcile_counters)
