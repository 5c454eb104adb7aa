import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="AuditLogEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "event_type",
                    models.CharField(
                        choices=[
                            ("user_registered", "User registered"),
                            ("user_login", "User login"),
                            ("otp_sent", "OTP sent"),
                            ("otp_verified", "OTP verified"),
                            ("otp_failed", "OTP failed"),
                            ("vote_cast", "Vote cast"),
                            ("vote_rejected", "Vote rejected"),
                            ("election_created", "Election created"),
                            ("election_updated", "Election updated"),
                            ("candidate_added", "Candidate added"),
                            ("admin_action", "Admin action"),
                        ],
                        max_length=32,
                    ),
                ),
                ("ip_address", models.GenericIPAddressField(blank=True, null=True)),
                ("details", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "voter",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="audit_entries",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "Audit log entries",
                "ordering": ("created_at", "id"),
                "indexes": [
                    models.Index(fields=["event_type", "created_at"], name="audit_event_ts"),
                    models.Index(fields=["voter", "created_at"], name="audit_voter_ts"),
                ],
            },
        ),
    ]
