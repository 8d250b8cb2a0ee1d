from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('Qsync', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='queuejob',
            name='claimed_until',
            field=models.DateTimeField(blank=True, help_text='Dispatcher reservation expiry', null=True),
        ),
        migrations.AddField(
            model_name='pollingwatermark',
            name='committed_key',
            field=models.CharField(blank=True, default='', max_length=50),
        ),
        migrations.AddField(
            model_name='pollingwatermark',
            name='pending_key',
            field=models.CharField(blank=True, default='', max_length=50),
        ),
    ]
