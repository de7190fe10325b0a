import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('purchases', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Transaction',
            fields=[
                ('id', models.CharField(editable=False, max_length=64, primary_key=True, serialize=False)),
                ('external_handle', models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ('amount', models.PositiveBigIntegerField()),
                ('method', models.CharField(choices=[('khalti', 'Khalti'), ('esewa', 'eSewa')], default='khalti', max_length=16)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('settled', 'Settled'), ('failed', 'Failed')], db_index=True, default='pending', max_length=16)),
                ('redirect_url', models.URLField(blank=True, default='', max_length=512)),
                ('raw_response', models.JSONField(blank=True, null=True)),
                ('failure_reason', models.CharField(blank=True, default='', max_length=255)),
                ('settled_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('purchase', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='transactions', to='purchases.purchaserecord')),
            ],
            options={
                'ordering': ('-created_at',),
            },
        ),
    ]
