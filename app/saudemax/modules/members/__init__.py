"""Member portal: profiles, share requests, support tickets, documents and billing."""
