"""Business services of the billing core."""
