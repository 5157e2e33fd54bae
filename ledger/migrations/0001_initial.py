from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Document",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("collection", models.CharField(max_length=64)),
                ("doc_id", models.CharField(max_length=128)),
                ("data", models.JSONField(default=dict)),
                ("version", models.PositiveBigIntegerField(default=1)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["collection", "id"], name="document_collection_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["collection", "doc_id"], name="uniq_document_collection_doc_id"),
                ],
            },
        ),
    ]
