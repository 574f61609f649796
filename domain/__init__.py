"""Describes the Granter domain. Centres around the `GrantRecipe`.

Why is this hard?

- It mostly isn't. Recipes are prompt templates with inputs and labelled
  outputs, sent to a hosted language model.
- The interesting part is the bookkeeping: when a recipe gets an id, when
  it is dirty, and when it locks.
- A recipe locks once it has produced output so the prompt that made the
  output can't drift. Cloning is the way back to editing.

The backing store and the model providers are external. Both are faked
in the tests.
"""
