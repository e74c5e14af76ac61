"""API Schemas — request/response models validated at the HTTP boundary."""
