"""Session token store and account onboarding."""
