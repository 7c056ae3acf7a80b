import django.core.validators
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='ProductSettings',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('allow_negative_stock', models.BooleanField(default=False, help_text='Let stock movements take a product below zero')),
                ('default_stock_threshold', models.PositiveIntegerField(default=10, help_text='Stock level at or below which a product counts as low stock', validators=[django.core.validators.MinValueValidator(0)])),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Product Settings',
                'verbose_name_plural': 'Product Settings',
            },
        ),
    ]
