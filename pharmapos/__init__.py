"""PharmaPOS: batch allocation and invoicing core for a retail pharmacy."""
