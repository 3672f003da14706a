"""Authentication services: login, registration and password reset."""
