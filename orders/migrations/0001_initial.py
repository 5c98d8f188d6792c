from decimal import Decimal

import django.core.validators
import django.db.models.deletion
import orders.models
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('catalog', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Order',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('reference', models.CharField(default=orders.models.generate_order_reference, help_text='Human readable order reference', max_length=32, unique=True)),
                ('status', models.CharField(choices=[('PENDING', 'Pending'), ('CONFIRMED', 'Confirmed'), ('CANCELLED', 'Cancelled')], db_index=True, default='PENDING', max_length=20)),
                ('notes', models.TextField(blank=True, default='')),
                ('total_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), help_text='Sum of item line totals, refused items excluded', max_digits=12)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('customer', models.ForeignKey(help_text='Customer who placed the order', on_delete=django.db.models.deletion.PROTECT, related_name='orders', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Order',
                'verbose_name_plural': 'Orders',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['customer', 'status'], name='order_customer_status_idx'),
                    models.Index(fields=['status', 'created_at'], name='order_status_created_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='OrderItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('quantity', models.PositiveIntegerField(help_text='Quantity ordered', validators=[django.core.validators.MinValueValidator(1)])),
                ('unit_price', models.DecimalField(decimal_places=2, help_text='Price per unit at time of order', max_digits=10)),
                ('store_status', models.CharField(choices=[('PENDING', 'Pending'), ('ACCEPTED', 'Accepted'), ('REFUSED', 'Refused'), ('SUGGESTED', 'Suggested')], db_index=True, default='PENDING', max_length=20)),
                ('store_price', models.DecimalField(blank=True, decimal_places=2, help_text='Price committed by the store', max_digits=10, null=True)),
                ('store_notes', models.TextField(blank=True, null=True)),
                ('store_suggestion', models.TextField(blank=True, null=True)),
                ('store_action_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('order', models.ForeignKey(help_text='Parent order', on_delete=django.db.models.deletion.CASCADE, related_name='items', to='orders.order')),
                ('product', models.ForeignKey(help_text='Requested product', on_delete=django.db.models.deletion.PROTECT, related_name='order_items', to='catalog.product')),
                ('store', models.ForeignKey(help_text='Store expected to fulfil this item', on_delete=django.db.models.deletion.PROTECT, related_name='order_items', to='catalog.store')),
                ('suggested_product', models.ForeignKey(blank=True, help_text='Substitute proposed by the store', null=True, on_delete=django.db.models.deletion.PROTECT, related_name='suggested_in_items', to='catalog.product')),
            ],
            options={
                'verbose_name': 'Order Item',
                'verbose_name_plural': 'Order Items',
                'ordering': ['id'],
                'indexes': [
                    models.Index(fields=['store', 'store_status'], name='item_store_status_idx'),
                ],
            },
        ),
    ]
