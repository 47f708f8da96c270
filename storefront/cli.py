"""Flask CLI commands for admin operations."""
import click
from flask import current_app


def register_cli(app):
    @app.cli.command("init-db")
    def init_db():
        """Create all tables and seed default categories."""
        from storefront.extensions import db
        from storefront.models.category import Category
        from storefront.services.product_service import slugify

        db.create_all()

        created = 0
        for name in current_app.config["DEFAULT_CATEGORIES"]:
            slug = slugify(name)
            if not Category.query.filter_by(slug=slug).first():
                db.session.add(Category(name=name, slug=slug))
                created += 1
        db.session.commit()

        click.echo(f"Database initialized ({created} categories added).")

    @app.cli.command("discard-images")
    @click.argument("references", nargs=-1, required=True)
    def discard_images(references):
        """Delete every stored variant behind the given image references."""
        from storefront.services import ingest_service

        count = ingest_service.discard(
            {"primary": references[0], "additional": list(references[1:])}
        )
        click.echo(f"Attempted to delete {count} blob(s).")

    @app.cli.command("resolve-image")
    @click.argument("reference")
    def resolve_image(reference):
        """Print the locator of a reference at every variant size."""
        from storefront.services import ingest_service

        for size, url in ingest_service.resolve_all(reference).items():
            click.echo(f"{size}: {url}")

    @app.cli.command("stats")
    def stats():
        """Show product statistics."""
        from storefront.services.product_service import get_stats

        s = get_stats()
        click.echo(f"Total products: {s['total']}")
        click.echo(f"  active: {s['active']}")
        click.echo(f"  with images: {s['with_images']}")
