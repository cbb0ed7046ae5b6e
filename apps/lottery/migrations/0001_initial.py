# Generated manually

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Draw',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('draw_date', models.DateTimeField(db_index=True, help_text='Close time of the draw')),
                ('prize_amount', models.PositiveIntegerField(default=50, help_text='Prize amount paid to the winner')),
                ('total_tickets', models.PositiveIntegerField(default=0, help_text='Sum of all participation rows')),
                ('status', models.CharField(choices=[('OPEN', 'Open'), ('COMPLETED', 'Completed'), ('CANCELLED', 'Cancelled')], db_index=True, default='OPEN', max_length=10)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('winner', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='won_draws', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Draw',
                'verbose_name_plural': 'Draws',
                'db_table': 'lottery_draws',
                'ordering': ['-draw_date'],
            },
        ),
        migrations.CreateModel(
            name='Ticket',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('source', models.CharField(choices=[('SURVEY', 'Survey'), ('SOCIAL', 'Social'), ('REFERRAL', 'Referral')], max_length=10)),
                ('confirmation_code', models.CharField(help_text='Idempotency token of this unit of credit', max_length=255, unique=True)),
                ('is_used', models.BooleanField(default=False, help_text='Whether the ticket has been applied to a draw')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('draw', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='tickets', to='lottery.draw')),
                ('user', models.ForeignKey(help_text='Owner of the ticket', on_delete=django.db.models.deletion.CASCADE, related_name='tickets', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Ticket',
                'verbose_name_plural': 'Tickets',
                'db_table': 'lottery_tickets',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='DrawParticipation',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('tickets_used', models.PositiveIntegerField(default=0)),
                ('is_winner', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('draw', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='participations', to='lottery.draw')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='participations', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Draw participation',
                'verbose_name_plural': 'Draw participations',
                'db_table': 'lottery_draw_participations',
            },
        ),
        migrations.CreateModel(
            name='ProcessedEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('event_id', models.CharField(max_length=255, unique=True)),
                ('outcome', models.CharField(default='CREDITED', max_length=20)),
                ('detail', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='processed_events', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Processed event',
                'verbose_name_plural': 'Processed events',
                'db_table': 'lottery_processed_events',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='PostbackAudit',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('transaction_id', models.CharField(blank=True, db_index=True, max_length=255)),
                ('raw_user_id', models.CharField(blank=True, max_length=64)),
                ('completion_status', models.CharField(blank=True, max_length=16)),
                ('outcome', models.CharField(choices=[('CREDITED', 'Credited'), ('DUPLICATE', 'Duplicate'), ('NOT_COMPLETED', 'Not completed'), ('AUTH_FAILED', 'Authentication failed'), ('INVALID', 'Invalid'), ('UNKNOWN_USER', 'Unknown user'), ('ERROR', 'Error')], db_index=True, max_length=20)),
                ('detail', models.TextField(blank=True)),
                ('test_mode', models.BooleanField(default=False)),
                ('remote_addr', models.GenericIPAddressField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='postback_audits', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Postback audit',
                'verbose_name_plural': 'Postback audits',
                'db_table': 'lottery_postback_audits',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Setting',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('key', models.CharField(max_length=255, unique=True)),
                ('value', models.TextField(blank=True)),
                ('description', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Setting',
                'verbose_name_plural': 'Settings',
                'db_table': 'lottery_settings',
                'ordering': ['key'],
            },
        ),
        migrations.CreateModel(
            name='SideEffectTask',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('SEND_EMAIL', 'Send email'), ('PROPAGATE_REFERRAL', 'Propagate referral'), ('NOTIFY_INSTANT', 'Instant notification')], max_length=32)),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('status', models.CharField(choices=[('PENDING', 'Pending'), ('RUNNING', 'Running'), ('DONE', 'Done'), ('FAILED', 'Failed')], default='PENDING', max_length=10)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('max_attempts', models.PositiveIntegerField(default=3)),
                ('next_attempt_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('last_error', models.TextField(blank=True)),
                ('dedupe_key', models.CharField(blank=True, help_text='Enqueueing the same key twice keeps the first task', max_length=255, null=True, unique=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Side-effect task',
                'verbose_name_plural': 'Side-effect tasks',
                'db_table': 'lottery_side_effect_tasks',
                'ordering': ['-created_at'],
            },
        ),
        migrations.AddConstraint(
            model_name='draw',
            constraint=models.UniqueConstraint(condition=models.Q(('status', 'OPEN')), fields=('status',), name='lottery_single_open_draw'),
        ),
        migrations.AddConstraint(
            model_name='drawparticipation',
            constraint=models.UniqueConstraint(fields=('user', 'draw'), name='lottery_unique_user_draw'),
        ),
        migrations.AddIndex(
            model_name='ticket',
            index=models.Index(fields=['user', 'source'], name='lottery_tic_user_source_idx'),
        ),
        migrations.AddIndex(
            model_name='ticket',
            index=models.Index(fields=['user', 'is_used'], name='lottery_tic_user_used_idx'),
        ),
        migrations.AddIndex(
            model_name='ticket',
            index=models.Index(fields=['draw', 'is_used'], name='lottery_tic_draw_used_idx'),
        ),
        migrations.AddIndex(
            model_name='postbackaudit',
            index=models.Index(fields=['user', 'transaction_id'], name='lottery_pba_user_trans_idx'),
        ),
        migrations.AddIndex(
            model_name='sideeffecttask',
            index=models.Index(fields=['status', 'next_attempt_at'], name='lottery_task_status_next_idx'),
        ),
    ]
