from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

	initial = True

	dependencies = [
		migrations.swappable_dependency(settings.AUTH_USER_MODEL),
	]

	operations = [
		migrations.CreateModel(
			name='Schedule',
			fields=[
				('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
				('name', models.CharField(default='Default', max_length=100)),
				('timezone', models.CharField(default='UTC', max_length=64)),
				('is_default', models.BooleanField(default=False)),
				('is_active', models.BooleanField(default=True)),
				('buffer_minutes', models.PositiveIntegerField(blank=True, null=True)),
				('buffer_mandatory', models.BooleanField(blank=True, null=True)),
				('created_at', models.DateTimeField(auto_now_add=True)),
				('updated_at', models.DateTimeField(auto_now=True)),
				(
					'provider',
					models.ForeignKey(
						on_delete=django.db.models.deletion.CASCADE,
						related_name='schedules',
						to=settings.AUTH_USER_MODEL,
					),
				),
			],
			options={
				'ordering': ['provider_id', '-is_default', 'name', 'id'],
			},
		),
		migrations.AddConstraint(
			model_name='schedule',
			constraint=models.UniqueConstraint(
				condition=models.Q(('is_active', True), ('is_default', True)),
				fields=('provider',),
				name='one_default_active_schedule_per_provider',
			),
		),
		migrations.CreateModel(
			name='WeeklyAvailability',
			fields=[
				('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
				('day_of_week', models.IntegerField()),
				('is_available', models.BooleanField(default=True)),
				('start_time', models.TimeField()),
				('end_time', models.TimeField()),
				(
					'schedule',
					models.ForeignKey(
						on_delete=django.db.models.deletion.CASCADE,
						related_name='weekly_availability',
						to='scheduling.schedule',
					),
				),
			],
			options={
				'ordering': ['schedule_id', 'day_of_week'],
			},
		),
		migrations.AddConstraint(
			model_name='weeklyavailability',
			constraint=models.UniqueConstraint(
				fields=('schedule', 'day_of_week'),
				name='one_weekly_entry_per_day',
			),
		),
		migrations.CreateModel(
			name='ScheduleException',
			fields=[
				('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
				('date', models.DateField()),
				(
					'type',
					models.CharField(
						choices=[
							('DAY_OFF', 'Day off'),
							('MODIFIED_HOURS', 'Modified hours'),
							('EXTRA_AVAILABILITY', 'Extra availability'),
						],
						default='DAY_OFF',
						max_length=20,
					),
				),
				('start_time', models.TimeField(blank=True, null=True)),
				('end_time', models.TimeField(blank=True, null=True)),
				('title', models.CharField(blank=True, default='', max_length=255)),
				('notes', models.TextField(blank=True, default='')),
				('created_at', models.DateTimeField(auto_now_add=True)),
				(
					'schedule',
					models.ForeignKey(
						on_delete=django.db.models.deletion.CASCADE,
						related_name='exceptions',
						to='scheduling.schedule',
					),
				),
			],
			options={
				'ordering': ['schedule_id', 'date', 'id'],
			},
		),
		migrations.CreateModel(
			name='BreakPeriod',
			fields=[
				('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
				('is_recurring', models.BooleanField(default=True)),
				('day_of_week', models.IntegerField(blank=True, null=True)),
				('start_time', models.TimeField()),
				('end_time', models.TimeField()),
				('title', models.CharField(blank=True, default='', max_length=255)),
				(
					'exception',
					models.ForeignKey(
						blank=True,
						null=True,
						on_delete=django.db.models.deletion.CASCADE,
						related_name='breaks',
						to='scheduling.scheduleexception',
					),
				),
				(
					'schedule',
					models.ForeignKey(
						on_delete=django.db.models.deletion.CASCADE,
						related_name='breaks',
						to='scheduling.schedule',
					),
				),
			],
			options={
				'ordering': ['schedule_id', 'day_of_week', 'start_time', 'id'],
			},
		),
		migrations.CreateModel(
			name='Appointment',
			fields=[
				('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
				('appointment_date', models.DateTimeField()),
				('duration', models.PositiveIntegerField(default=30)),
				('end_date', models.DateTimeField(editable=False)),
				(
					'status',
					models.CharField(
						choices=[
							('SCHEDULED', 'SCHEDULED'),
							('CONFIRMED', 'CONFIRMED'),
							('IN_PROGRESS', 'IN_PROGRESS'),
							('COMPLETED', 'COMPLETED'),
							('CANCELLED', 'CANCELLED'),
						],
						default='SCHEDULED',
						max_length=20,
					),
				),
				('reason', models.CharField(blank=True, default='', max_length=255)),
				('notes', models.TextField(blank=True, default='')),
				('created_at', models.DateTimeField(auto_now_add=True)),
				('updated_at', models.DateTimeField(auto_now=True)),
				(
					'patient',
					models.ForeignKey(
						on_delete=django.db.models.deletion.PROTECT,
						related_name='patient_appointments',
						to=settings.AUTH_USER_MODEL,
					),
				),
				(
					'provider',
					models.ForeignKey(
						on_delete=django.db.models.deletion.PROTECT,
						related_name='provider_appointments',
						to=settings.AUTH_USER_MODEL,
					),
				),
			],
			options={
				'ordering': ['appointment_date', 'id'],
				'indexes': [
					models.Index(fields=['provider', 'appointment_date', 'end_date'], name='sched_appt_provider_range_idx'),
					models.Index(fields=['patient', 'appointment_date'], name='sched_appt_patient_date_idx'),
				],
			},
		),
	]
