"""
Management command to seed the database with sample jewelry catalog data.

Generates:
- Jewelry categories
- Products with opening stock recorded as IN movements
- Size variants for rings

Usage:
    python manage.py seed_data
    python manage.py seed_data --products 200 --clear
"""
import random
from decimal import Decimal

from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from django.utils.text import slugify

from core.models import ProductSettings
from inventory.ledger import MovementType
from inventory.models import Category, Product, ProductVariant, StockMovement
from inventory.services import adjust_stock


CATEGORY_TEMPLATES = {
    'Rings': ['Solitaire Ring', 'Stackable Band', 'Signet Ring', 'Cocktail Ring', 'Eternity Band'],
    'Necklaces': ['Pendant Necklace', 'Layered Chain', 'Choker', 'Locket', 'Tennis Necklace'],
    'Earrings': ['Stud Earrings', 'Hoop Earrings', 'Drop Earrings', 'Ear Cuff', 'Huggies'],
    'Bracelets': ['Tennis Bracelet', 'Charm Bracelet', 'Cuff Bracelet', 'Bangle', 'Chain Bracelet'],
    'Anklets': ['Beaded Anklet', 'Chain Anklet', 'Charm Anklet'],
    'Mangalsutra': ['Classic Mangalsutra', 'Diamond Mangalsutra', 'Bracelet Mangalsutra'],
}

METALS = ['Sterling Silver', '18K Gold Plated', 'Rose Gold Plated', '14K Gold', 'Platinum Finish']
STONES = ['Cubic Zirconia', 'Pearl', 'Emerald', 'Ruby', 'Sapphire', 'Moissanite', '']
RING_SIZES = ['6', '7', '8', '9', '10', '12', '14']


class Command(BaseCommand):
    help = 'Seed the database with sample jewelry categories, products and opening stock'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear catalog data without stock history before seeding',
        )
        parser.add_argument(
            '--products',
            type=int,
            default=120,
            help='Number of products to create (default: 120)',
        )
        parser.add_argument(
            '--max-stock',
            type=int,
            default=60,
            help='Upper bound for random opening stock (default: 60)',
        )

    def handle(self, *args, **options):
        if options['clear']:
            self._clear_data()

        self.stdout.write('Starting database seeding...')
        ProductSettings.load()

        with transaction.atomic():
            categories = self._create_categories()
            products = self._create_products(options['products'], categories)
            self._create_ring_variants(products)

        # Opening stock goes through the ledger so history starts balanced
        self._record_opening_stock(products, options['max_stock'])

        self.stdout.write(self.style.SUCCESS('Database seeding completed successfully!'))

    def _clear_data(self):
        if StockMovement.objects.exists():
            raise CommandError(
                'Stock movements exist; the ledger is append-only and cannot be cleared.'
            )
        ProductVariant.objects.all().delete()
        Product.objects.all().delete()
        Category.objects.all().delete()
        self.stdout.write(self.style.WARNING('Catalog data cleared.'))

    def _create_categories(self):
        categories = []
        for name in CATEGORY_TEMPLATES:
            category, created = Category.objects.get_or_create(
                name=name, defaults={'slug': slugify(name)}
            )
            categories.append(category)
            if created:
                self.stdout.write(f'  Created category: {name}')
        self.stdout.write(self.style.SUCCESS(f'{len(categories)} categories ready'))
        return categories

    def _create_products(self, count, categories):
        existing_skus = set(Product.objects.values_list('sku', flat=True))
        products = []

        self.stdout.write(f'Creating {count} products...')
        for i in range(count):
            category = random.choice(categories)
            base_name = random.choice(CATEGORY_TEMPLATES[category.name])
            metal = random.choice(METALS)
            stone = random.choice(STONES)
            name = f"{metal} {stone + ' ' if stone else ''}{base_name}"

            sku = f"{category.name[:3].upper()}-{i + 1:05d}"
            if sku in existing_skus:
                continue
            existing_skus.add(sku)

            products.append(Product(
                name=name,
                slug=slugify(f"{name}-{sku}"),
                sku=sku,
                description=f"{base_name} in {metal.lower()}.",
                price=Decimal(str(round(random.uniform(499, 24999), 2))),
                category=category,
                is_active=random.random() > 0.05
            ))

        Product.objects.bulk_create(products)
        products = list(Product.objects.filter(sku__in=[p.sku for p in products]))
        self.stdout.write(self.style.SUCCESS(f'Created {len(products)} products'))
        return products

    def _create_ring_variants(self, products):
        variants = []
        for product in products:
            if not product.sku.startswith('RIN'):
                continue
            for size in random.sample(RING_SIZES, k=3):
                variants.append(ProductVariant(
                    product=product,
                    name=f"Size {size}",
                    sku=f"{product.sku}-S{size}",
                ))
        ProductVariant.objects.bulk_create(variants)
        self.stdout.write(self.style.SUCCESS(f'Created {len(variants)} ring variants'))

    def _record_opening_stock(self, products, max_stock):
        recorded = 0
        for product in products:
            variants = list(product.variants.all())
            targets = [(v.id, random.randint(0, max_stock // 3)) for v in variants] or [
                (None, random.randint(0, max_stock))
            ]
            for variant_id, quantity in targets:
                if quantity == 0:
                    continue
                adjust_stock(
                    product.id, MovementType.IN, quantity, 'Opening stock',
                    variant_id=variant_id
                )
                recorded += 1
        self.stdout.write(self.style.SUCCESS(f'Recorded {recorded} opening stock movements'))
