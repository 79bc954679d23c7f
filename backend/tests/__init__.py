# Lead Backoffice - Tests
