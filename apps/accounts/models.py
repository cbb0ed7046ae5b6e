from django.db import models
from django.contrib.auth.models import AbstractUser, BaseUserManager
import secrets


class UserManager(BaseUserManager):
    """
    Custom user manager where email is the unique identifier
    """

    def create_user(self, email, password=None, **extra_fields):
        """
        Create and save a regular user with the given email and password.
        """
        if not email:
            raise ValueError('The email must be set')

        email = self.normalize_email(email)
        user = self.model(email=email, **extra_fields)
        user.set_password(password)
        user.save(using=self._db)
        return user

    def create_superuser(self, email, password=None, **extra_fields):
        """
        Create and save a superuser with the given email and password.
        """
        extra_fields.setdefault('is_staff', True)
        extra_fields.setdefault('is_superuser', True)
        extra_fields.setdefault('is_active', True)

        if extra_fields.get('is_staff') is not True:
            raise ValueError('Superuser must have is_staff=True.')
        if extra_fields.get('is_superuser') is not True:
            raise ValueError('Superuser must have is_superuser=True.')

        return self.create_user(email, password, **extra_fields)


class User(AbstractUser):
    """
    Custom User model with email as primary identifier.
    Also carries the per-user ticket balance record.
    """
    username = None  # Remove username field

    email = models.EmailField(
        unique=True,
        help_text="User's email address"
    )
    name = models.CharField(
        max_length=150,
        blank=True,
        help_text="Display name"
    )
    available_tickets = models.PositiveIntegerField(
        default=0,
        help_text="Tickets redeemable in the current draw (reset every draw)"
    )
    total_tickets_earned = models.PositiveIntegerField(
        default=0,
        help_text="Lifetime tickets earned (never reset)"
    )
    has_won = models.BooleanField(
        default=False,
        help_text="Whether the user has ever won a draw"
    )
    last_win_date = models.DateTimeField(
        null=True,
        blank=True,
    )
    referred_by = models.ForeignKey(
        'self',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='referrals',
        help_text="User who referred this user"
    )
    referral_code = models.CharField(
        max_length=16,
        unique=True,
        editable=False,
        help_text="Code other users enter to name this user as their referrer"
    )
    social_media_followed = models.BooleanField(
        default=False,
        help_text="Whether the social follow ticket was awarded"
    )
    is_blocked = models.BooleanField(
        default=False,
        help_text="Blocked users cannot authenticate"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = []

    objects = UserManager()

    class Meta:
        db_table = 'users'
        verbose_name = 'User'
        verbose_name_plural = 'Users'
        indexes = [
            models.Index(fields=['created_at'], name='users_created_idx'),
            models.Index(fields=['available_tickets'], name='users_available_idx'),
        ]

    def __str__(self):
        return self.email

    @staticmethod
    def generate_referral_code():
        """
        Generate a random unique referral code
        """
        while True:
            code = secrets.token_hex(4).upper()
            if not User.objects.filter(referral_code=code).exists():
                return code

    def save(self, *args, **kwargs):
        if not self.referral_code:
            self.referral_code = self.generate_referral_code()
        super().save(*args, **kwargs)
