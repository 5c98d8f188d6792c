"""
Management command to seed the database with sample marketplace data.

Generates:
- Product categories
- Products with catalog prices
- Stores, each with an owner account
- Store bindings (store price per product) for part of the catalog

Usage:
    python manage.py seed_data
    python manage.py seed_data --clear  # Clear existing data first
"""
import random
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from catalog.models import Category, Product, Store, StoreProduct

OWNER_PASSWORD = 'store-owner-pass'


class Command(BaseCommand):
    help = 'Seed the database with sample categories, products, stores and store bindings'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding',
        )
        parser.add_argument(
            '--products',
            type=int,
            default=300,
            help='Number of products to create (default: 300)',
        )
        parser.add_argument(
            '--stores',
            type=int,
            default=10,
            help='Number of stores to create (default: 10)',
        )

    def handle(self, *args, **options):
        if options['clear']:
            self.stdout.write('Clearing existing data...')
            self._clear_data()

        self.stdout.write('Starting database seeding...')

        with transaction.atomic():
            categories = self._create_categories()
            products = self._create_products(options['products'], categories)
            stores = self._create_stores(options['stores'])
            self._create_bindings(products, stores)

        self.stdout.write(self.style.SUCCESS('Database seeding completed successfully!'))

    def _clear_data(self):
        from orders.models import OrderItem, Order

        OrderItem.objects.all().delete()
        Order.objects.all().delete()
        StoreProduct.objects.all().delete()
        Store.objects.all().delete()
        Product.objects.all().delete()
        Category.objects.all().delete()

        self.stdout.write(self.style.WARNING('All existing data cleared.'))

    def _create_categories(self):
        names = [
            'Pain Relief', 'Cold & Flu', 'Vitamins & Supplements', 'First Aid',
            'Skin Care', 'Digestive Health', 'Allergy', 'Baby Care',
            'Oral Care', 'Eye Care',
        ]
        categories = []
        for name in names:
            category, _ = Category.objects.get_or_create(name=name)
            categories.append(category)

        self.stdout.write(self.style.SUCCESS(f'Created {len(categories)} categories'))
        return categories

    def _create_products(self, count, categories):
        """Create sample products with realistic names."""
        templates = {
            'Pain Relief': ['Paracetamol', 'Ibuprofen', 'Aspirin', 'Naproxen'],
            'Cold & Flu': ['Cough Syrup', 'Throat Lozenges', 'Nasal Spray', 'Decongestant'],
            'Vitamins & Supplements': ['Vitamin C', 'Vitamin D3', 'Zinc', 'Magnesium', 'Omega-3'],
            'First Aid': ['Bandages', 'Antiseptic Solution', 'Gauze Pads', 'Medical Tape'],
            'Skin Care': ['Moisturizing Cream', 'Sunscreen SPF50', 'Hydrocortisone Cream'],
            'Digestive Health': ['Antacid', 'Probiotic', 'Oral Rehydration Salts'],
            'Allergy': ['Cetirizine', 'Loratadine', 'Antihistamine Eye Drops'],
        }
        forms = ['Tablets', 'Capsules', 'Syrup', 'Gel', 'Drops', 'Sachets']
        strengths = ['100mg', '200mg', '250mg', '500mg', '1g']

        existing_names = set(Product.objects.values_list('name', flat=True))
        products = []

        self.stdout.write(f'Creating {count} products...')

        for i in range(count):
            category = random.choice(categories)
            base = random.choice(templates.get(category.name, ['Care Product']))

            for _ in range(10):
                name = f"{base} {random.choice(strengths)} {random.choice(forms)} x{random.randint(6, 60)}"
                if name not in existing_names:
                    break
            else:
                name = f"{base} #{i + 1}"
            existing_names.add(name)

            products.append(Product(
                name=name,
                description=f"{base} ({category.name.lower()}).",
                price=Decimal(str(round(random.uniform(1, 80), 2))),
                category=category,
                is_active=random.random() > 0.05,
            ))

        Product.objects.bulk_create(products)

        products = list(Product.objects.filter(is_active=True))
        self.stdout.write(self.style.SUCCESS(f'{len(products)} active products available'))
        return products

    def _create_stores(self, count):
        """Create stores, each operated by its own owner account."""
        User = get_user_model()
        districts = [
            'Analakely', 'Ankorondrano', 'Ivandry', 'Isoraka', 'Behoririka',
            'Ambohijatovo', 'Andravoahangy', 'Ampefiloha', 'Tsaralalana', 'Anosy',
        ]

        stores = []
        for i in range(count):
            district = districts[i % len(districts)]
            store = Store.objects.create(
                name=f"Pharmacie {district} {i + 1}",
                location=f"Lot {random.randint(1, 999)} {district}",
                is_active=random.random() > 0.1,
            )
            owner, created = User.objects.get_or_create(username=f"store_owner_{store.id}")
            if created:
                owner.set_password(OWNER_PASSWORD)
                owner.save()
            store.owners.add(owner)
            stores.append(store)

        self.stdout.write(self.style.SUCCESS(
            f'Created {len(stores)} stores (owner password: {OWNER_PASSWORD})'
        ))
        return stores

    def _create_bindings(self, products, stores):
        """Bind 40-80% of the catalog to each store at a price near the catalog price."""
        bindings = []
        for store in stores:
            sample = random.sample(products, k=int(len(products) * random.uniform(0.4, 0.8)))
            for product in sample:
                markup = Decimal(str(round(random.uniform(0.9, 1.3), 2)))
                bindings.append(StoreProduct(
                    store=store,
                    product=product,
                    price=(product.price * markup).quantize(Decimal('0.01')),
                    stock=random.randint(0, 200),
                ))

        batch_size = 5000
        for i in range(0, len(bindings), batch_size):
            StoreProduct.objects.bulk_create(bindings[i:i + batch_size], ignore_conflicts=True)

        self.stdout.write(self.style.SUCCESS(f'Created {StoreProduct.objects.count()} store bindings'))
