# Generated manually for the redemptions app

import uuid
from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('deals', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Claim',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('claim_code', models.CharField(db_index=True, max_length=6)),
                ('code_expires_at', models.DateTimeField()),
                ('status', models.CharField(choices=[('pending', 'Pending activation'), ('claimed', 'Claimed'), ('used', 'Used'), ('completed', 'Completed'), ('expired', 'Expired')], default='claimed', max_length=20)),
                ('bill_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('actual_savings', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('vendor_verified', models.BooleanField(default=False)),
                ('verified_at', models.DateTimeField(blank=True, null=True)),
                ('claimed_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('used_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('deal', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='claims', to='deals.deal')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='claims', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'deal_claims',
                'ordering': ['-claimed_at'],
                'indexes': [
                    models.Index(fields=['user', 'deal'], name='claims_user_deal_idx'),
                    models.Index(fields=['deal', 'status'], name='claims_deal_status_idx'),
                    models.Index(fields=['status', 'code_expires_at'], name='claims_status_expiry_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('status__in', ['pending', 'claimed'])), fields=('claim_code',), name='unique_active_claim_code'),
                    models.UniqueConstraint(condition=models.Q(('status__in', ['pending', 'claimed'])), fields=('user', 'deal'), name='unique_active_claim_per_user_deal'),
                    models.CheckConstraint(condition=models.Q(models.Q(('vendor_verified', True), ('verified_at__isnull', False)), models.Q(('vendor_verified', False), ('verified_at__isnull', True)), _connector='OR'), name='verified_at_iff_vendor_verified'),
                ],
            },
        ),
        migrations.CreateModel(
            name='DealVerificationSecret',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('pin_hash', models.CharField(blank=True, max_length=255)),
                ('pin_salt', models.CharField(blank=True, max_length=64)),
                ('pin_created_at', models.DateTimeField(blank=True, null=True)),
                ('pin_expires_at', models.DateTimeField(blank=True, null=True)),
                ('legacy_pin', models.CharField(blank=True, max_length=16)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('deal', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='verification_secret', to='deals.deal')),
            ],
            options={
                'db_table': 'deal_verification_secrets',
            },
        ),
        migrations.CreateModel(
            name='AttemptRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('pin', 'Deal PIN'), ('claim_code', 'Claim code')], max_length=20)),
                ('ip_address', models.GenericIPAddressField(blank=True, null=True)),
                ('user_agent', models.CharField(blank=True, max_length=500)),
                ('success', models.BooleanField()),
                ('failure_reason', models.CharField(blank=True, max_length=50)),
                ('attempted_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('deal', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='verification_attempts', to='deals.deal')),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='verification_attempts', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'verification_attempts',
                'ordering': ['-attempted_at'],
                'indexes': [
                    models.Index(fields=['deal', 'attempted_at'], name='attempts_deal_time_idx'),
                    models.Index(fields=['kind', 'attempted_at'], name='attempts_kind_time_idx'),
                    models.Index(fields=['user', 'attempted_at'], name='attempts_user_time_idx'),
                    models.Index(fields=['ip_address', 'attempted_at'], name='attempts_ip_time_idx'),
                ],
            },
        ),
    ]
