from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("costing", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="costlot",
            name="value_remaining",
            field=models.DecimalField(decimal_places=10, default=0, max_digits=28),
        ),
    ]
